#!/usr/bin/env python3
"""
Exact Online OAuth Setup Helper

Connects an organization to Exact Online from the terminal: prints (and
opens) the authorization URL, takes the code from the redirect and stores
the resulting token in the database.

Usage:
    python scripts/exact_oauth_setup.py --org ORGANIZATION_ID
    python scripts/exact_oauth_setup.py --org ORGANIZATION_ID --check

Prerequisites:
    1. Register an app in the Exact Online App Center
    2. Set EXACT_CLIENT_ID, EXACT_CLIENT_SECRET, EXACT_REDIRECT_URI and
       DATABASE_URL in your .env file
"""

import argparse
import sys
import webbrowser
from pathlib import Path
from urllib.parse import parse_qs, urlparse

sys.path.insert(0, str(Path(__file__).parent.parent))

from flowqi.config.loader import get_exact_config  # noqa: E402
from flowqi.db.exact_tokens import DatabaseTokenStore  # noqa: E402
from flowqi.utils.oauth import (  # noqa: E402
    ExactTokenManager,
    OAuthTokenError,
    create_exact_oauth_manager,
)


def extract_code(value: str) -> str:
    """Accept either the bare code or the full redirect URL."""
    value = value.strip()
    if value.startswith("http"):
        return (parse_qs(urlparse(value).query).get("code") or [""])[0]
    return value


def check_token(manager: ExactTokenManager) -> int:
    try:
        token = manager.get_valid_token()
    except OAuthTokenError as e:
        print(f"❌ {e}")
        return 1
    print(f"✅ Valid token for division {token.division}, issued {token.created_at.isoformat()}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Exact Online OAuth setup")
    parser.add_argument("--org", required=True, help="Organization ID to connect")
    parser.add_argument("--check", action="store_true", help="Only check (and refresh) the token")
    args = parser.parse_args()

    print("Exact Online OAuth Setup Helper")
    print("=" * 40)

    try:
        exact_config = get_exact_config()
    except ValueError as e:
        print(f"❌ Error: {e}")
        print("Add EXACT_CLIENT_ID, EXACT_CLIENT_SECRET and EXACT_REDIRECT_URI to your .env file")
        return 1

    oauth_manager = create_exact_oauth_manager(exact_config)
    manager = ExactTokenManager(oauth_manager, DatabaseTokenStore(), args.org)

    if args.check:
        return check_token(manager)

    auth_url = oauth_manager.get_authorization_url(state=args.org)
    print("Open this URL in your browser to authorize FlowQi:")
    print()
    print(auth_url)
    print()
    try:
        webbrowser.open(auth_url, new=2)
    except webbrowser.Error as e:
        print(f"(Couldn't open the browser automatically: {e})")

    print(f"After authorizing you are redirected to {exact_config.redirect_uri}?code=...")
    auth_code = extract_code(input("Paste the code or the full redirect URL: "))
    if not auth_code:
        print("❌ No authorization code provided")
        return 1

    try:
        token = manager.store_authorization_code(auth_code)
    except OAuthTokenError as e:
        print(f"❌ {e}")
        return 1

    print(f"✅ Token stored for organization {args.org}")
    print(f"   Expires in {token.expires_in}s; it is refreshed automatically on use.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
