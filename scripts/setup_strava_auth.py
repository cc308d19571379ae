"""
Obtain Strava tokens with the scopes the tracker needs, store them in the
tokens table and print them.
"""

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from urllib.parse import urlencode

# Add the project root to sys.path so we can import backend modules
sys.path.append(str(Path(__file__).parent.parent))

from backend.auth import STRAVA_SCOPE
from backend.database import Base, SessionLocal, engine
from backend.errors import TokenRefreshFailed
from backend.services.athlete_service import save_authorization
from backend.strava_client import STRAVA_AUTHORIZE_URL, StravaTokenIssuer

# Not served by the API, so the code stays in the browser address bar for us
REDIRECT_URI = "http://localhost/exchange_token"

async def main():
    print("Step 1: Get your Strava API credentials at https://www.strava.com/settings/api\n")
    client_id = input("Enter your Strava Client ID: ").strip()
    if not client_id:
        print("Client ID is required")
        return 1

    params = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": REDIRECT_URI,
        "approval_prompt": "force",
        "scope": STRAVA_SCOPE,
    }
    print("\nStep 2: Open this URL in your browser and authorize the app:")
    print(f"\n{STRAVA_AUTHORIZE_URL}?{urlencode(params)}\n")
    print("The browser will fail to load http://localhost/exchange_token?...&code=...; copy the code parameter.\n")

    code = input("Enter the authorization code: ").strip()
    client_secret = input("Enter your Strava Client Secret: ").strip()
    if not code or not client_secret:
        print("Authorization code and Client Secret are required")
        return 1

    try:
        data = await StravaTokenIssuer(client_id, client_secret).exchange_code(code)
    except TokenRefreshFailed as e:
        print(f"Error getting access token ({e.reason}): {e.message}")
        return 1

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        user = save_authorization(data, db, scope=STRAVA_SCOPE)
        user_id = user.id if user else None
    finally:
        db.close()
    if user_id is None:
        print("Strava did not return the athlete; tokens were not stored")
        return 1

    print(f"\nStored tokens for athlete {data['athlete']['id']} (user {user_id})")
    print("=====================================")
    print(f"Access Token: {data['access_token']}")
    print(f"Refresh Token: {data['refresh_token']}")
    print(f"Expires At: {datetime.fromtimestamp(int(data['expires_at']))}")
    print("=====================================")
    print("\nAdd these to backend/.env if they are not there yet:")
    print(f"STRAVA_CLIENT_ID={client_id}")
    print(f"STRAVA_CLIENT_SECRET={client_secret}")
    return 0

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
