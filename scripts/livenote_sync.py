#!/usr/bin/env python3
import argparse
import base64
import json
import sys
from urllib import request, error


SKIPPED_SUFFIX = ".notes_config"
USER_AGENT = "livenote-sync/1.0"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Push a local text or markdown file to a livenote server."
    )
    parser.add_argument("filename", help="file to sync; also the note title unless --title is given")
    parser.add_argument("username")
    parser.add_argument("password")
    parser.add_argument("server_url", help="e.g. https://notes.example.com")
    parser.add_argument("--title", default="", help="note title to use instead of the filename")
    parser.add_argument(
        "--raw",
        action="store_true",
        help="store the file verbatim (/sync-raw) instead of rendering markdown (/sync)",
    )
    parser.add_argument("--timeout", type=float, default=10.0, help="request timeout in seconds")
    return parser.parse_args(argv)


def basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def build_sync_request(server_url: str, title: str, body: str, username: str, password: str,
                       raw: bool = False) -> request.Request:
    endpoint = "/sync-raw" if raw else "/sync"
    payload = json.dumps({"title": title, "body": body}, ensure_ascii=False).encode("utf-8")
    req = request.Request(url=server_url.rstrip("/") + endpoint, data=payload, method="POST")
    req.add_header("Content-Type", "application/json")
    req.add_header("User-Agent", USER_AGENT)
    req.add_header("Authorization", basic_auth_header(username, password))
    return req


def send_request(req: request.Request, timeout_sec: float) -> tuple[int, str]:
    try:
        with request.urlopen(req, timeout=timeout_sec) as resp:
            body = resp.read().decode("utf-8", errors="replace")
            return int(getattr(resp, "status", 0) or 0), body
    except error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8", errors="replace")


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.filename.endswith(SKIPPED_SUFFIX):
        return 0

    try:
        with open(args.filename, "r", encoding="utf-8") as f:
            body = f.read()
    except OSError as exc:
        print(f"[livenote] cannot read {args.filename}: {exc}", file=sys.stderr)
        return 1

    title = args.title or args.filename
    req = build_sync_request(args.server_url, title, body, args.username, args.password, raw=args.raw)
    try:
        status, text = send_request(req, args.timeout)
    except OSError as exc:
        reason = getattr(exc, "reason", exc)
        print(f"[livenote] request failed url={req.full_url} err={reason}", file=sys.stderr)
        return 1

    print(f"Response: {status}")
    print(f"Response Body: {text}")
    return 0 if 200 <= status < 300 else 1


if __name__ == "__main__":
    raise SystemExit(main())
