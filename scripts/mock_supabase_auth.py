#!/usr/bin/env python3
"""In-memory stand-in for the Supabase auth admin users API."""

from __future__ import annotations

import argparse
import json
import threading
import uuid
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

ADMIN_USERS_PATH = "/auth/v1/admin/users"

_USERS: dict[str, dict[str, object]] = {}
_LOCK = threading.Lock()


class MockSupabaseAdminHandler(BaseHTTPRequestHandler):
    server_version = "MockSupabaseAdmin/1.0"

    def do_GET(self) -> None:  # noqa: N802 - stdlib handler signature
        parsed = urlparse(self.path)
        if parsed.path == "/healthz":
            self._write_json(HTTPStatus.OK, {"status": "ok"})
            return
        if parsed.path != ADMIN_USERS_PATH:
            self._write_json(HTTPStatus.NOT_FOUND, {"msg": "not found"})
            return

        query = parse_qs(parsed.query)
        page = max(1, int(query.get("page", ["1"])[0]))
        per_page = max(1, int(query.get("per_page", ["50"])[0]))
        with _LOCK:
            users = list(_USERS.values())
        start = (page - 1) * per_page
        self._write_json(HTTPStatus.OK, {"users": users[start : start + per_page]})

    def do_POST(self) -> None:  # noqa: N802
        if urlparse(self.path).path != ADMIN_USERS_PATH:
            self._write_json(HTTPStatus.NOT_FOUND, {"msg": "not found"})
            return
        body = self._read_json()
        email = body.get("email")
        with _LOCK:
            if any(user["email"] == email for user in _USERS.values()):
                self._write_json(HTTPStatus.UNPROCESSABLE_ENTITY, {"msg": "email already registered"})
                return
            user = {
                "id": str(uuid.uuid4()),
                "email": email,
                "user_metadata": body.get("user_metadata") or {},
            }
            _USERS[user["id"]] = user
        self._write_json(HTTPStatus.OK, user)

    def do_PUT(self) -> None:  # noqa: N802
        user_id = self._user_id()
        body = self._read_json()
        with _LOCK:
            user = _USERS.get(user_id or "")
            if user is None:
                self._write_json(HTTPStatus.NOT_FOUND, {"msg": "user not found"})
                return
            if body.get("email"):
                user["email"] = body["email"]
            if isinstance(body.get("user_metadata"), dict):
                user["user_metadata"] = body["user_metadata"]
        self._write_json(HTTPStatus.OK, user)

    def do_DELETE(self) -> None:  # noqa: N802
        user_id = self._user_id()
        with _LOCK:
            removed = _USERS.pop(user_id or "", None)
        if removed is None:
            self._write_json(HTTPStatus.NOT_FOUND, {"msg": "user not found"})
            return
        self._write_json(HTTPStatus.OK, {})

    def log_message(self, _: str, *args: object) -> None:
        if args:
            print("mock-supabase-admin:", *args)

    def _user_id(self) -> str | None:
        path = urlparse(self.path).path
        prefix = f"{ADMIN_USERS_PATH}/"
        if not path.startswith(prefix):
            return None
        return path[len(prefix) :] or None

    def _read_json(self) -> dict[str, object]:
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0:
            return {}
        try:
            body = json.loads(self.rfile.read(length))
        except json.JSONDecodeError:
            return {}
        return body if isinstance(body, dict) else {}

    def _write_json(self, status: HTTPStatus, payload: dict[str, object]) -> None:
        raw = json.dumps(payload).encode("utf-8")
        self.send_response(status.value)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)


def main() -> None:
    parser = argparse.ArgumentParser(description="Mock Supabase auth admin /auth/v1/admin/users endpoints.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=54321)
    args = parser.parse_args()

    server = ThreadingHTTPServer((args.host, args.port), MockSupabaseAdminHandler)
    print(f"mock-supabase-admin listening on http://{args.host}:{args.port}", flush=True)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


if __name__ == "__main__":
    main()
