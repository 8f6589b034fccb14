import time
from pathlib import Path
from typing import Callable, Optional

import jwt
import requests

from flightsign.logger import get_console
from flightsign.src.core.errors import AuthenticationError
from flightsign.src.utils.config_loader import TeamConfig

# Apple rejects tokens that live longer than 20 minutes
TOKEN_LIFETIME = 20 * 60
REFRESH_MARGIN = 60
AUDIENCE = "appstoreconnect-v1"


class ApiKeyAuth:
    """App Store Connect API key authentication (ES256 JWT)"""

    def __init__(
        self,
        key_id: str,
        issuer_id: str,
        private_key_path: Path,
        clock: Callable[[], float] = time.time,
        session: Optional[requests.Session] = None,
    ):
        self.console = get_console()
        self.key_id = key_id
        self.issuer_id = issuer_id
        self.private_key_path = Path(private_key_path)
        self.clock = clock
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._expires_at = 0.0

    @classmethod
    def from_team_config(cls, config: TeamConfig) -> "ApiKeyAuth":
        return cls(config.api_key_id, config.api_issuer_id, config.api_key_path)

    def _private_key(self) -> str:
        try:
            return self.private_key_path.read_text()
        except OSError as e:
            raise AuthenticationError(f"Cannot read API key {self.private_key_path}: {e}")

    def token(self) -> str:
        """Return a cached token, minting a new one shortly before expiry"""
        now = self.clock()
        if self._token and now < self._expires_at - REFRESH_MARGIN:
            return self._token

        issued_at = int(now)
        payload = {
            "iss": self.issuer_id,
            "iat": issued_at,
            "exp": issued_at + TOKEN_LIFETIME,
            "aud": AUDIENCE,
        }
        try:
            token = jwt.encode(
                payload,
                self._private_key(),
                algorithm="ES256",
                headers={"kid": self.key_id, "typ": "JWT"},
            )
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise AuthenticationError(
                f"Could not sign API token with {self.private_key_path.name}: {e}"
            )

        self._token = token
        self._expires_at = issued_at + TOKEN_LIFETIME
        return token

    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token()}"}
