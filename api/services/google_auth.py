"""
Google account credentials for the sync providers.

Each connected Google account has an authorized-user token file named
<account>.json in the token directory. Acquiring those tokens (the OAuth
consent flow) happens elsewhere; this module only loads them.
"""
import logging
from pathlib import Path
from typing import Optional

from google.oauth2.credentials import Credentials

from api.services.errors import NotFoundError
from config.settings import settings

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/contacts.readonly",
]


class GoogleAuthService:
    """Loads stored credentials per Google account."""

    def __init__(self, token_dir: Optional[Path] = None):
        self.token_dir = Path(token_dir or settings.google_token_dir)

    def token_path(self, account_id: str) -> Path:
        return self.token_dir / f"{account_id}.json"

    def list_accounts(self) -> list[str]:
        """Accounts with a stored token, sorted."""
        if not self.token_dir.exists():
            return []
        return sorted(p.stem for p in self.token_dir.glob("*.json"))

    def get_credentials(self, account_id: str) -> Credentials:
        """
        Load credentials for an account.

        Expired access tokens are refreshed by the API client on first use.

        Raises:
            NotFoundError: no token stored for the account
        """
        path = self.token_path(account_id)
        if not path.exists():
            raise NotFoundError(f"No Google token for account {account_id} (expected {path})")
        return Credentials.from_authorized_user_file(str(path), SCOPES)


# Singleton instance
_google_auth: Optional[GoogleAuthService] = None


def get_google_auth() -> GoogleAuthService:
    """Get or create the singleton GoogleAuthService."""
    global _google_auth
    if _google_auth is None:
        _google_auth = GoogleAuthService()
    return _google_auth
