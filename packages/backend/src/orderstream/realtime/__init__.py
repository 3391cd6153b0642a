"""Real-time infrastructure — change capture and WebSocket fan-out.

Learn: Events flow in one direction:
1. A committed write on orders → ChangeSource (commit hook or PG NOTIFY)
2. ChangeSource → Broadcaster (one event at a time, in commit order)
3. Broadcaster → every Subscriber in the SubscriberRegistry

The ConnectionGate decides who gets into the registry; the WebSocket
endpoint adds and removes entries as sockets come and go.
"""
