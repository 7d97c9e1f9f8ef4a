import logging

import requests
from django.core.cache import cache as default_cache

from .exceptions import AuthError, ConfigurationError

logger = logging.getLogger(__name__)

TOKEN_LIFETIME = 60 * 60  # provider tokens expire after one hour
TOKEN_SAFETY_MARGIN = 10 * 60


class AuthTokenProvider:
    """Fetches and caches ClickPesa bearer tokens.

    Tokens live in the shared Django cache for ``lifetime - margin`` seconds so a
    near-expiry token is never handed out. Concurrent refreshes are harmless.
    """

    def __init__(self, config, session=None, cache=None,
                 lifetime=TOKEN_LIFETIME, margin=TOKEN_SAFETY_MARGIN):
        self.config = config
        self.session = session or requests.Session()
        self.cache = cache or default_cache
        self.ttl = lifetime - margin

    @property
    def cache_key(self):
        return f"payments:auth_token:{self.config.name}"

    def is_configured(self):
        return self.config.has("client_id", "api_key")

    def get_token(self) -> str:
        token = self.cache.get(self.cache_key)
        if token:
            return token

        token = self._generate_token()
        self.cache.set(self.cache_key, token, self.ttl)
        return token

    def invalidate(self):
        self.cache.delete(self.cache_key)

    def _generate_token(self):
        if not self.is_configured():
            raise ConfigurationError(
                "ClickPesa not properly configured. Missing client_id or api_key."
            )

        try:
            response = self.session.post(
                f"{self.config.api_url}/generate-token",
                headers={
                    "client-id": self.config.client_id,
                    "api-key": self.config.api_key,
                },
                timeout=self.config.timeout,
            )
        except requests.Timeout:
            logger.error("ClickPesa token request timed out after %ss", self.config.timeout)
            raise
        except requests.RequestException as e:
            logger.exception("ClickPesa token request failed")
            raise AuthError(f"ClickPesa token request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.error(
                "ClickPesa token generation failed",
                extra={"status": response.status_code, "response": response.text},
            )
            raise AuthError(
                f"Failed to generate ClickPesa auth token: {response.text}",
                response_body=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict) or not data.get("success") or not data.get("token"):
            raise AuthError(
                "Invalid response from ClickPesa token endpoint",
                response_body=response.text,
            )

        return data["token"]
