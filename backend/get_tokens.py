"""
Amazon LwA Token Exchange Script
Obtain the refresh token the ingestion service runs with (ADS_API_REFRESH_TOKEN).

Usage:
    python3 get_tokens.py                      # print the authorization URL
    python3 get_tokens.py YOUR_AUTH_CODE       # exchange the code for tokens
    python3 get_tokens.py --refresh TOKEN      # check a refresh token still works

Requires environment variables:
    ADS_API_CLIENT_ID      — Your Amazon Ads OAuth client ID
    ADS_API_CLIENT_SECRET  — Your Amazon Ads OAuth client secret
    ADS_API_REDIRECT_URI   — (optional) defaults to https://localhost/callback
"""

import json
import os
import sys
import urllib.parse

import httpx

from app.services.token_service import TOKEN_TIMEOUT, TOKEN_URL

CLIENT_ID = os.environ.get("ADS_API_CLIENT_ID", "")
CLIENT_SECRET = os.environ.get("ADS_API_CLIENT_SECRET", "")
REDIRECT_URI = os.environ.get("ADS_API_REDIRECT_URI", "https://localhost/callback")

AUTH_URL = (
    f"https://www.amazon.com/ap/oa"
    f"?client_id={CLIENT_ID}"
    f"&scope=advertising::campaign_management"
    f"&response_type=code"
    f"&redirect_uri={urllib.parse.quote(REDIRECT_URI)}"
)


def _post_token(data: dict) -> dict:
    response = httpx.post(
        TOKEN_URL,
        data={**data, "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET},
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        timeout=TOKEN_TIMEOUT,
    )
    if response.status_code != 200:
        print(f"\nError {response.status_code}: {response.text}")
        return {}
    return response.json()


def exchange_code(auth_code: str) -> dict:
    """Exchange authorization code for access + refresh tokens."""
    return _post_token({
        "grant_type": "authorization_code",
        "code": auth_code,
        "redirect_uri": REDIRECT_URI,
    })


def refresh_access_token(refresh_token: str) -> dict:
    """Use refresh token to get a new access token."""
    return _post_token({"grant_type": "refresh_token", "refresh_token": refresh_token})


def main(argv: list[str]) -> int:
    if not CLIENT_ID or not CLIENT_SECRET:
        print("ERROR: ADS_API_CLIENT_ID and ADS_API_CLIENT_SECRET environment variables are required.")
        return 1

    if len(argv) < 2:
        print("=" * 60)
        print("AMAZON ADS TOKEN EXCHANGE")
        print("=" * 60)
        print()
        print("STEP 1: Add this Return URL to your Security Profile:")
        print(f"  {REDIRECT_URI}")
        print()
        print("STEP 2: Open this URL in your browser and authorize:")
        print()
        print(AUTH_URL)
        print()
        print("STEP 3: After redirect, copy the 'code' parameter from the URL and run:")
        print("  python3 get_tokens.py YOUR_AUTH_CODE")
        return 0

    if argv[1] == "--refresh":
        if len(argv) < 3:
            print("Usage: python3 get_tokens.py --refresh YOUR_REFRESH_TOKEN")
            return 1
        print("Refreshing access token...")
        tokens = refresh_access_token(argv[2])
    else:
        print("Exchanging authorization code for tokens...")
        tokens = exchange_code(argv[1])

    if not tokens:
        print("\nFailed to get tokens. Check the error above.")
        return 1

    print()
    print("=" * 60)
    print("SUCCESS!")
    print("=" * 60)
    if "expires_in" in tokens:
        print(f"Access token expires in {tokens['expires_in']} seconds")
    if "refresh_token" in tokens:
        print()
        print("Add this to the service environment:")
        print(f"  ADS_API_REFRESH_TOKEN={tokens['refresh_token']}")
    print()
    print("Full response:")
    print(json.dumps(tokens, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
