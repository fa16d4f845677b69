#!/usr/bin/env python3
import argparse, os, sys

from chatcore.core.auth import HmacTokenValidator

def main():
    ap = argparse.ArgumentParser(description="Mint an HS256 token for a chatcore server running with JWT_SECRET")
    ap.add_argument("--user", required=True)
    ap.add_argument("--email", required=True)
    ap.add_argument("--role", default="user", choices=["user", "moderator", "admin"])
    ap.add_argument("--ttl", type=int, default=24 * 3600, help="lifetime in seconds")
    ap.add_argument("--secret", default=os.environ.get("JWT_SECRET", ""))
    args = ap.parse_args()

    if not args.secret:
        sys.exit("JWT_SECRET is not set and --secret was not given")

    token = HmacTokenValidator(args.secret).issue(args.user, email=args.email, role=args.role, ttl_secs=args.ttl)
    print(token)

if __name__ == "__main__":
    main()
