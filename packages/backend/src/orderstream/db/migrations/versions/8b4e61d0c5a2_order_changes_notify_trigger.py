"""order_changes NOTIFY trigger

Learn: PostgreSQL LISTEN/NOTIFY turns every committed write on orders into
a push notification. The payload mirrors the WebSocket order_change body:
{operation, data, old_data?}. For DELETE, data is the pre-image.
The channel is ORDERSTREAM_NOTIFY_CHANNEL at migration time, the same
setting PostgresChangeSource LISTENs on.

NOTIFY is transactional: listeners only see it after COMMIT, and a rolled
back write never notifies.

Revision ID: 8b4e61d0c5a2
Revises: 3f1c2a9d7e10
Create Date: 2026-10-18 09:31:05.402117
"""
from typing import Sequence, Union

from alembic import op

from orderstream.config import settings


# revision identifiers, used by Alembic.
revision: str = "8b4e61d0c5a2"
down_revision: Union[str, None] = "3f1c2a9d7e10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    channel = settings.notify_channel
    op.execute(f"""
        CREATE OR REPLACE FUNCTION notify_order_changes()
        RETURNS TRIGGER AS $$
        BEGIN
            IF TG_OP = 'INSERT' THEN
                PERFORM pg_notify('{channel}', json_build_object(
                    'operation', 'INSERT',
                    'data', row_to_json(NEW)
                )::text);
                RETURN NEW;
            ELSIF TG_OP = 'UPDATE' THEN
                PERFORM pg_notify('{channel}', json_build_object(
                    'operation', 'UPDATE',
                    'data', row_to_json(NEW),
                    'old_data', row_to_json(OLD)
                )::text);
                RETURN NEW;
            ELSIF TG_OP = 'DELETE' THEN
                PERFORM pg_notify('{channel}', json_build_object(
                    'operation', 'DELETE',
                    'data', row_to_json(OLD)
                )::text);
                RETURN OLD;
            END IF;
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER order_changes_notify
            AFTER INSERT OR UPDATE OR DELETE ON orders
            FOR EACH ROW
            EXECUTE FUNCTION notify_order_changes();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS order_changes_notify ON orders;")
    op.execute("DROP FUNCTION IF EXISTS notify_order_changes;")
