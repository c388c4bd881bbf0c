"""
Resolve provider credentials from the environment and build an authenticated client handle.

Three credential sources are supported, tried in this order:

- api_key: GEMINI_API_KEY (or GOOGLE_API_KEY) -> Gemini Developer API, key sent as a header
- service_account: GOOGLE_SERVICE_ACCOUNT_JSON (raw JSON blob) -> Vertex AI, OAuth2 bearer token
- application_default: GOOGLE_USE_DEFAULT_CREDENTIALS=1 or GOOGLE_APPLICATION_CREDENTIALS -> Vertex AI

The handle is resolved once per process and cached; call reset_provider_client() after
changing the environment.
"""

import os
import json
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import google.auth
from google.auth.exceptions import DefaultCredentialsError, RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import service_account

from .errors import ConfigurationError, CredentialParseError

logger = logging.getLogger(__name__)

API_KEY = "api_key"
SERVICE_ACCOUNT = "service_account"
APPLICATION_DEFAULT = "application_default"

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
DEFAULT_LOCATION = "us-central1"

_TRUTHY = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class CredentialSource:
    kind: str
    api_key: Optional[str] = field(default=None, repr=False)
    service_account_info: Optional[Dict[str, Any]] = field(default=None, repr=False)
    project: Optional[str] = None
    location: str = DEFAULT_LOCATION


def resolve_credential_source(env: Optional[Mapping[str, str]] = None) -> CredentialSource:
    """
    Pick the credential source from environment configuration.

    Raises:
        ConfigurationError: no credential source is configured.
        CredentialParseError: GOOGLE_SERVICE_ACCOUNT_JSON is set but is not a JSON object.
    """
    env = os.environ if env is None else env
    project = env.get("GOOGLE_CLOUD_PROJECT") or None
    location = env.get("GOOGLE_CLOUD_LOCATION") or DEFAULT_LOCATION

    api_key = env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY")
    if api_key:
        return CredentialSource(kind=API_KEY, api_key=api_key)

    blob = env.get("GOOGLE_SERVICE_ACCOUNT_JSON")
    if blob:
        try:
            info = json.loads(blob)
        except json.JSONDecodeError as e:
            # The position is safe to report, the content is not.
            raise CredentialParseError(
                f"GOOGLE_SERVICE_ACCOUNT_JSON is not valid JSON (line {e.lineno}, column {e.colno})"
            ) from None
        if not isinstance(info, dict):
            raise CredentialParseError("GOOGLE_SERVICE_ACCOUNT_JSON must be a JSON object")
        return CredentialSource(
            kind=SERVICE_ACCOUNT,
            service_account_info=info,
            project=project or info.get("project_id"),
            location=location,
        )

    use_adc = (env.get("GOOGLE_USE_DEFAULT_CREDENTIALS") or "").strip().lower() in _TRUTHY
    if use_adc or env.get("GOOGLE_APPLICATION_CREDENTIALS"):
        return CredentialSource(kind=APPLICATION_DEFAULT, project=project, location=location)

    raise ConfigurationError(
        "No provider credentials configured. Set GEMINI_API_KEY (or GOOGLE_API_KEY), "
        "GOOGLE_SERVICE_ACCOUNT_JSON, or GOOGLE_APPLICATION_CREDENTIALS."
    )


def vertex_base_url(project: str, location: str) -> str:
    host = "aiplatform.googleapis.com" if location == "global" else f"{location}-aiplatform.googleapis.com"
    return f"https://{host}/v1/projects/{project}/locations/{location}/publishers/google/models"


class ProviderClient:
    """Authenticated handle for issuing model calls against one provider endpoint."""

    def __init__(
        self,
        *,
        kind: str,
        base_url: str,
        api_key: Optional[str] = None,
        credentials: Any = None,
        project: Optional[str] = None,
        location: Optional[str] = None,
    ):
        self.kind = kind
        self.base_url = base_url.rstrip("/")
        self.project = project
        self.location = location
        self._api_key = api_key
        self._credentials = credentials

    @property
    def is_vertex(self) -> bool:
        return self.kind != API_KEY

    def model_url(self, model: str, method: str = "generateContent") -> str:
        return f"{self.base_url}/{model}:{method}"

    async def auth_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            # Header rather than ?key= so the secret never shows up in logged URLs.
            headers["x-goog-api-key"] = self._api_key
            return headers

        creds = self._credentials
        if not creds.valid:
            try:
                await asyncio.to_thread(creds.refresh, Request())
            except RefreshError as e:
                raise ConfigurationError(f"Could not refresh Google credentials: {type(e).__name__}") from e
        headers["Authorization"] = f"Bearer {creds.token}"
        return headers

    def describe(self) -> str:
        if self.is_vertex:
            return f"{self.kind} (vertex project={self.project}, location={self.location})"
        return f"{self.kind} (gemini developer api)"


def build_provider_client(source: CredentialSource) -> ProviderClient:
    if source.kind == API_KEY:
        return ProviderClient(kind=API_KEY, base_url=GEMINI_BASE_URL, api_key=source.api_key)

    if source.kind == SERVICE_ACCOUNT:
        try:
            credentials = service_account.Credentials.from_service_account_info(
                source.service_account_info,
                scopes=[CLOUD_PLATFORM_SCOPE],
            )
        except (ValueError, KeyError) as e:
            # google-auth reports missing fields / bad key material as ValueError.
            raise CredentialParseError(
                f"GOOGLE_SERVICE_ACCOUNT_JSON is not a usable service account key: {type(e).__name__}"
            ) from None
        project = source.project
    else:
        try:
            credentials, default_project = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        except DefaultCredentialsError as e:
            raise ConfigurationError(f"Application default credentials are not available: {e}") from e
        project = source.project or default_project

    if not project:
        raise ConfigurationError(
            "Vertex AI needs a project id. Set GOOGLE_CLOUD_PROJECT or include project_id in the service account JSON."
        )

    return ProviderClient(
        kind=source.kind,
        base_url=vertex_base_url(project, source.location),
        credentials=credentials,
        project=project,
        location=source.location,
    )


_PROVIDER_CLIENT: Optional[ProviderClient] = None


def get_provider_client() -> ProviderClient:
    global _PROVIDER_CLIENT
    if _PROVIDER_CLIENT is None:
        client = build_provider_client(resolve_credential_source())
        logger.info(f"Provider client ready: {client.describe()}")
        _PROVIDER_CLIENT = client
    return _PROVIDER_CLIENT


def reset_provider_client() -> None:
    global _PROVIDER_CLIENT
    _PROVIDER_CLIENT = None
