"""
Checks that a Strava refresh token still works: performs one refresh and
calls /athlete with the new access token.
"""

import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add the project root to sys.path so we can import backend modules
sys.path.append(str(Path(__file__).parent.parent))

from backend.errors import StravaUnauthorized, TokenRefreshFailed, UpstreamUnavailable
from backend.strava_client import StravaClient, StravaTokenIssuer

async def main():
    client_id = input("Enter your Strava Client ID: ").strip()
    client_secret = input("Enter your Strava Client Secret: ").strip()
    refresh_token = input("Enter your current Refresh Token: ").strip()
    if not (client_id and client_secret and refresh_token):
        print("Client ID, Client Secret and Refresh Token are all required")
        return 1

    print("\nTesting token refresh...\n")
    issuer = StravaTokenIssuer(client_id, client_secret)
    try:
        grant = await issuer.refresh(refresh_token)
    except TokenRefreshFailed as e:
        print(f"Token refresh failed ({e.reason}): {e.message}")
        print("\nTroubleshooting:")
        print("- Check that your Client ID and Secret are correct")
        print("- Verify your refresh token is still valid")
        print("- Check that your app is not rate limited")
        return 1

    expires = datetime.fromtimestamp(grant.expires_at)
    hours_left = round((grant.expires_at - datetime.now().timestamp()) / 3600)
    print("Token refresh successful!")
    print(f"Access Token:  {grant.access_token[:20]}...")
    print(f"Refresh Token: {grant.refresh_token[:20]}...")
    print(f"Expires At:    {expires} (in {hours_left} hours)")

    print("\nTesting new access token...")
    try:
        athlete = await StravaClient().get_athlete(grant.access_token)
    except (StravaUnauthorized, UpstreamUnavailable) as e:
        print(f"Athlete request failed: {e}")
        return 1

    print(f"Access token is working for {athlete.get('firstname')} {athlete.get('lastname')} (ID: {athlete.get('id')})")
    return 0

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
