import json

from flask import has_request_context, request, session

from db import get_db


def to_json(value):
    if value is None:
        return None
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return None


def log_event(action, details=None, conn=None):
    """
    Writes one audit_logs row for the current request.
    Failures are printed and swallowed so auditing never breaks a page.
    """
    try:
        user_id = ip = user_agent = None
        if has_request_context():
            user = session.get("user")
            user_id = user["id"] if user else None
            ip = request.remote_addr
            user_agent = request.headers.get("User-Agent")

        conn = conn or get_db()
        conn.execute(
            "INSERT INTO audit_logs (user_id, action, details, ip, user_agent) VALUES (?, ?, ?, ?, ?)",
            (user_id, action, to_json(details), ip, user_agent)
        )
        conn.commit()
    except Exception as e:
        print(f"Audit log error: {e}", flush=True)
