"""Authentication and authorization.

Learn: One credential, two carriers. Login mints a JWT access token and
returns it both in the body and in an HttpOnly session cookie. Browsers ride
on the cookie (including the WebSocket upgrade, which cannot set headers);
scripts and the CLI send it as a Bearer header.

Every credential resolves to a CurrentIdentity — user id plus role — and
roles map to capabilities in permissions.py.
"""
