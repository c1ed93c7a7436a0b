# gdrive_auth.py
import json
import logging
import threading
from pathlib import Path
from typing import Optional

import requests
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

# Only files created by this app are visible to it.
SCOPES = ["https://www.googleapis.com/auth/drive.file"]
REVOKE_URL = "https://oauth2.googleapis.com/revoke"


class DriveCredentialProvider:
    """
    Holds the Google Drive OAuth credentials of the current user.

    The provider is the only writer of the cached credentials: authorize()
    stores a new grant, get_access_token() refreshes an expired one and
    revoke() drops it. Storage backends only read through it.
    """

    def __init__(
        self,
        client_config_json: Optional[str] = None,
        token_json: Optional[str] = None,
        token_path: Optional[Path] = None,
    ):
        self.client_config = json.loads(client_config_json) if client_config_json else None
        self.token_path = Path(token_path) if token_path else None
        self._credentials: Optional[Credentials] = None
        self._lock = threading.Lock()

        if token_json:
            try:
                self._credentials = Credentials.from_authorized_user_info(json.loads(token_json), SCOPES)
                logging.info("Google Drive credentials loaded.")
            except (ValueError, KeyError) as e:
                logging.error(f"Failed to load Google Drive token, Drive stays disconnected. Error: {e}")
                self._credentials = None

    @property
    def credentials(self) -> Optional[Credentials]:
        return self._credentials

    def has_client_config(self) -> bool:
        return bool(self.client_config)

    def is_authorized(self) -> bool:
        """True if a grant is cached. Does not go to the network."""
        creds = self._credentials
        return creds is not None and (creds.valid or bool(creds.refresh_token))

    def get_access_token(self) -> Optional[str]:
        """
        Returns a usable access token, refreshing an expired one first.
        Returns None if the user never authorized or the refresh was rejected.
        """
        with self._lock:
            creds = self._credentials
            if creds is None:
                return None
            if not creds.valid:
                if not (creds.expired and creds.refresh_token):
                    return None
                try:
                    logging.info("Refreshing Google Drive access token...")
                    creds.refresh(Request())
                    self._save(creds)
                except RefreshError as e:
                    logging.error(f"Google Drive token refresh was rejected, dropping the grant. Error: {e}")
                    self._credentials = None
                    return None
            return creds.token

    def authorize(self) -> Credentials:
        """
        Runs the installed-app consent flow in the browser and stores the grant.

        :raises ValueError: If no OAuth client config is available.
        """
        if not self.client_config:
            raise ValueError("GDRIVE_CREDENTIALS_JSON is required to authorize Google Drive.")

        flow = InstalledAppFlow.from_client_config(self.client_config, SCOPES)
        creds = flow.run_local_server(port=0)
        with self._lock:
            self._credentials = creds
            self._save(creds)
        logging.info("Google Drive authorized.")
        return creds

    def revoke(self):
        """Revokes the grant at Google and forgets it locally."""
        with self._lock:
            creds = self._credentials
            self._credentials = None
            if self.token_path and self.token_path.is_file():
                self.token_path.unlink()

        if creds is None or not creds.token:
            return
        try:
            response = requests.post(
                REVOKE_URL,
                params={"token": creds.token},
                headers={"content-type": "application/x-www-form-urlencoded"},
                timeout=30,
            )
            response.raise_for_status()
            logging.info("Google Drive token revoked.")
        except requests.exceptions.RequestException as e:
            logging.warning(f"Could not revoke Google Drive token at Google, it was only dropped locally. Error: {e}")

    def _save(self, creds: Credentials):
        if not self.token_path:
            return
        try:
            self.token_path.write_text(creds.to_json())
            logging.info(f"Token saved to {self.token_path}")
        except OSError as e:
            logging.error(f"Failed to save Google Drive token to {self.token_path}: {e}")
