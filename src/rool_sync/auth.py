"""Authentication for the sync client.

``AuthSession`` is the single source of bearer tokens for the API and every
stream transport. Credentials live behind an ``AuthProvider``, chosen at
construction: ``FileAuthProvider`` for a host process (TOML file guarded by a
file lock, browser login through a loopback server) or ``MemoryAuthProvider``
for embedding and tests.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import logging
import os
import secrets
import threading
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any, Optional, Protocol
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import toml  # type: ignore[import-untyped]
from filelock import FileLock, Timeout

from rool_sync.config import ROOL_DIR
from rool_sync.context import SessionContext
from rool_sync.errors import CredentialsRejected, NotAuthenticated, RoolError, TransportError
from rool_sync.models import AuthUser, Credentials
from rool_sync.notifier import Notifier

logger = logging.getLogger(__name__)

REFRESH_ENDPOINT = "https://securetoken.googleapis.com/v1/token"

# Provider capabilities
CAP_LOGIN = "login"
CAP_LOGOUT = "logout"
CAP_CREDENTIALS = "credentials"
CAP_STORAGE = "storage"
CAP_CALLBACK = "process_callback"


def endpoint_hash(auth_url: Optional[str]) -> str:
    """Short hash of the auth URL, used to scope files per deployment."""
    if not auth_url:
        return "default"
    return hashlib.sha256(auth_url.encode("utf-8")).hexdigest()[:8]


def credentials_from_callback(params: dict[str, str], now: Optional[float] = None) -> Credentials:
    """Build credentials from the login callback fields.

    Raises:
        NotAuthenticated: ``id_token`` or ``expires_in`` missing or invalid.
    """
    id_token = params.get("id_token")
    expires_in = params.get("expires_in")
    if not id_token or not expires_in:
        raise NotAuthenticated("Login callback did not include tokens")
    try:
        lifetime = float(expires_in)
    except ValueError as exc:
        raise NotAuthenticated("Login callback has an invalid expiry") from exc
    current = time.time() if now is None else now
    return Credentials(
        access_token=id_token,
        refresh_token=params.get("refresh_token") or None,
        expires_at=current + lifetime,
    )


class CredentialStore:
    """Manages storage of tokens in TOML format, one file per auth endpoint."""

    def __init__(self, directory: Optional[Path] = None, scope: str = "default"):
        self.directory = directory or ROOL_DIR
        self.credentials_path = self.directory / f"credentials-{scope}.toml"
        self.storage_path = self.directory / f"storage-{scope}.json"
        self.lock_path = self.credentials_path.with_suffix(".lock")

    def _ensure_directory(self) -> None:
        self.directory.mkdir(mode=0o700, parents=True, exist_ok=True)

    def _acquire_lock(self) -> FileLock:
        return FileLock(self.lock_path, timeout=10)

    def _write_private(self, path: Path, write) -> None:
        self._ensure_directory()
        try:
            with self._acquire_lock():
                with open(path, "w", encoding="utf-8") as handle:
                    write(handle)
                if os.name != "nt":
                    os.chmod(path, 0o600)
        except Timeout as exc:
            raise RoolError(
                "Cannot acquire lock on credentials file. Another process may be using it."
            ) from exc

    def load(self) -> Optional[Credentials]:
        """Load credentials. Returns None if missing or unreadable."""
        if not self.credentials_path.exists():
            return None
        try:
            with self._acquire_lock():
                with open(self.credentials_path, "r", encoding="utf-8") as handle:
                    data = toml.load(handle)
        except (toml.TomlDecodeError, OSError, Timeout):
            return None

        tokens = data.get("tokens")
        if not isinstance(tokens, dict) or "access" not in tokens:
            return None
        try:
            expires_at = float(tokens.get("expires_at", 0))
        except (TypeError, ValueError):
            return None
        return Credentials(
            access_token=tokens["access"],
            refresh_token=tokens.get("refresh") or None,
            expires_at=expires_at,
        )

    def save(self, credentials: Credentials) -> None:
        """Save credentials with 600 permissions."""
        tokens: dict[str, Any] = {
            "access": credentials.access_token,
            "expires_at": credentials.expires_at,
        }
        # TOML has no null
        if credentials.refresh_token:
            tokens["refresh"] = credentials.refresh_token
        self._write_private(self.credentials_path, lambda handle: toml.dump({"tokens": tokens}, handle))

    def clear(self) -> None:
        """Delete the credentials file."""
        try:
            with self._acquire_lock():
                if self.credentials_path.exists():
                    self.credentials_path.unlink()
        except Timeout as exc:
            raise RoolError(
                "Cannot acquire lock on credentials file. Another process may be using it."
            ) from exc

    def exists(self) -> bool:
        return self.credentials_path.exists()

    def load_storage(self) -> Optional[dict[str, Any]]:
        if not self.storage_path.exists():
            return None
        try:
            with open(self.storage_path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def save_storage(self, data: dict[str, Any]) -> None:
        self._write_private(self.storage_path, lambda handle: json.dump(data, handle, indent=2))


class AuthProvider(Protocol):
    """Fixed capability surface every credential provider exposes."""

    kind: str
    capabilities: frozenset[str]

    def set_auth_url(self, url: str) -> None: ...

    def read_credentials(self) -> Optional[Credentials]: ...

    def write_credentials(self, credentials: Credentials) -> None: ...

    def clear_credentials(self) -> None: ...

    def get_storage(self) -> Optional[dict[str, Any]]: ...

    def set_storage(self, data: dict[str, Any]) -> None: ...

    async def login(self, app_name: str) -> Credentials: ...


class MemoryAuthProvider:
    """In-process provider. Nothing touches the filesystem."""

    kind = "memory"
    capabilities = frozenset({CAP_LOGOUT, CAP_CREDENTIALS, CAP_STORAGE})

    def __init__(self, credentials: Optional[Credentials] = None, storage: Optional[dict[str, Any]] = None):
        self._credentials = credentials
        self._storage = dict(storage) if storage is not None else None

    def set_auth_url(self, url: str) -> None:
        pass

    def read_credentials(self) -> Optional[Credentials]:
        return self._credentials

    def write_credentials(self, credentials: Credentials) -> None:
        self._credentials = credentials

    def clear_credentials(self) -> None:
        self._credentials = None

    def get_storage(self) -> Optional[dict[str, Any]]:
        return dict(self._storage) if self._storage is not None else None

    def set_storage(self, data: dict[str, Any]) -> None:
        self._storage = dict(data)

    async def login(self, app_name: str) -> Credentials:
        raise NotAuthenticated("MemoryAuthProvider cannot log in interactively")


_CAPTURE_PAGE = b"""<html>
<body>
  <h1>Authenticating...</h1>
  <script>
    if (window.location.hash) {
      fetch('/callback', {
        method: 'POST',
        headers: {'Content-Type': 'application/x-www-form-urlencoded'},
        body: window.location.hash.substring(1)
      })
      .then(() => document.body.innerHTML = '<h1>Login successful. You can close this window.</h1>')
      .catch(err => document.body.innerHTML = '<h1>Error: ' + err.message + '</h1>');
    }
  </script>
</body>
</html>
"""


class _LoopbackHandler(BaseHTTPRequestHandler):
    """Serves the fragment-capture page and receives the token POST."""

    server: "_LoopbackServer"

    def do_GET(self) -> None:
        if urlparse(self.path).path != "/":
            self.send_response(404)
            self.end_headers()
            return
        self.send_response(200)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        self.wfile.write(_CAPTURE_PAGE)

    def do_POST(self) -> None:
        if urlparse(self.path).path != "/callback":
            self.send_response(404)
            self.end_headers()
            return
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length).decode("utf-8")
        params = {key: values[0] for key, values in parse_qs(body).items()}
        if not params.get("id_token") or not params.get("expires_in"):
            self.send_response(400)
            self.end_headers()
            self.wfile.write(b"Invalid tokens")
            return
        self.send_response(200)
        self.end_headers()
        self.wfile.write(b"OK")
        self.server.deliver(params)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("loopback: " + format, *args)


class _LoopbackServer(HTTPServer):
    def __init__(self, loop: asyncio.AbstractEventLoop, future: "asyncio.Future[dict[str, str]]"):
        super().__init__(("127.0.0.1", 0), _LoopbackHandler)
        self._loop = loop
        self._future = future

    def deliver(self, params: dict[str, str]) -> None:
        def _set() -> None:
            if not self._future.done():
                self._future.set_result(params)

        self._loop.call_soon_threadsafe(_set)


class FileAuthProvider:
    """Host-process provider backed by ``CredentialStore``."""

    kind = "file"
    capabilities = frozenset({CAP_LOGIN, CAP_LOGOUT, CAP_CREDENTIALS, CAP_STORAGE, CAP_CALLBACK})

    LOGIN_TIMEOUT_SECONDS = 300.0

    def __init__(
        self,
        directory: Optional[Path] = None,
        auth_url: Optional[str] = None,
        login_timeout: Optional[float] = None,
        open_browser=webbrowser.open,
    ):
        self._directory = directory
        self._auth_url = auth_url.rstrip("/") if auth_url else None
        self._login_timeout = login_timeout or self.LOGIN_TIMEOUT_SECONDS
        self._open_browser = open_browser
        self.store = CredentialStore(directory, endpoint_hash(self._auth_url))

    def set_auth_url(self, url: str) -> None:
        self._auth_url = url.rstrip("/")
        self.store = CredentialStore(self._directory, endpoint_hash(self._auth_url))

    @property
    def auth_url(self) -> str:
        if not self._auth_url:
            raise RoolError("Auth URL not set")
        return self._auth_url

    def read_credentials(self) -> Optional[Credentials]:
        return self.store.load()

    def write_credentials(self, credentials: Credentials) -> None:
        self.store.save(credentials)

    def clear_credentials(self) -> None:
        self.store.clear()

    def get_storage(self) -> Optional[dict[str, Any]]:
        return self.store.load_storage()

    def set_storage(self, data: dict[str, Any]) -> None:
        try:
            self.store.save_storage(data)
        except (OSError, RoolError):
            logger.exception("Failed to save user storage cache")

    def process_callback(self, fragment: str) -> Credentials:
        """Store credentials from a ``#id_token=...&expires_in=...`` fragment."""
        trimmed = fragment[1:] if fragment.startswith("#") else fragment
        params = {key: values[0] for key, values in parse_qs(trimmed).items()}
        credentials = credentials_from_callback(params)
        self.write_credentials(credentials)
        return credentials

    async def login(self, app_name: str) -> Credentials:
        """Open the browser on the auth page and wait for the loopback callback."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, str]] = loop.create_future()
        server = _LoopbackServer(loop, future)
        thread = threading.Thread(target=server.serve_forever, name="rool-login", daemon=True)
        thread.start()
        try:
            port = server.server_address[1]
            query = urlencode(
                {
                    "redirect_uri": f"http://localhost:{port}",
                    "app_name": app_name,
                    "state": secrets.token_urlsafe(16),
                }
            )
            login_url = f"{self.auth_url}/?{query}"
            logger.info("Opening browser to log in to %s: %s", app_name, login_url)
            self._open_browser(login_url)
            try:
                params = await asyncio.wait_for(future, timeout=self._login_timeout)
            except asyncio.TimeoutError as exc:
                raise NotAuthenticated("Login timed out. Please try again.") from exc
        finally:
            server.shutdown()
            server.server_close()
        credentials = credentials_from_callback(params)
        self.write_credentials(credentials)
        return credentials


def decode_auth_user(access_token: Optional[str]) -> AuthUser:
    """Read email/name from the JWT payload without verifying it."""
    if not access_token:
        return AuthUser()
    parts = access_token.split(".")
    if len(parts) < 2:
        return AuthUser()
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError):
        logger.debug("Failed to decode access token payload")
        return AuthUser()
    if not isinstance(payload, dict):
        return AuthUser()
    return AuthUser(email=payload.get("email") or None, name=payload.get("name") or None)


class AuthSession:
    """Bearer-token source shared by the API and all transports.

    Token writes are serialized through a single refresh task: concurrent
    ``get_token()`` calls inside the refresh window all await the same
    refresh and resolve to the same new token.
    """

    REFRESH_BUFFER_SECONDS = 300.0
    RETRY_DELAY_SECONDS = 30.0
    EVENTS = frozenset({"auth_state_changed"})

    def __init__(
        self,
        context: SessionContext,
        provider: Optional[AuthProvider] = None,
        token_url: str = REFRESH_ENDPOINT,
    ):
        self.context = context
        self.provider: AuthProvider = provider or FileAuthProvider(
            directory=context.config.config_dir
        )
        self.provider.set_auth_url(context.config.auth_url)
        self.token_url = token_url
        self.notifier = Notifier(self.EVENTS, name="auth")
        self._refresh_task: Optional[asyncio.Task[bool]] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._background: set[asyncio.Task[None]] = set()
        self._closed = False

    def supports(self, capability: str) -> bool:
        return capability in self.provider.capabilities

    def subscribe(self, kind: str, handler):
        return self.notifier.subscribe(kind, handler)

    def initialize(self) -> bool:
        """Arm the refresh timer. Returns True if credentials are present."""
        authenticated = self.provider.read_credentials() is not None
        if authenticated:
            self._arm_timer()
        return authenticated

    @property
    def credentials(self) -> Optional[Credentials]:
        return self.provider.read_credentials()

    def is_authenticated(self) -> bool:
        return self.provider.read_credentials() is not None

    async def get_token(self) -> Optional[str]:
        """Return a usable access token, refreshing first when near expiry."""
        credentials = self.provider.read_credentials()
        if credentials is None:
            return None
        if not credentials.expires_within(self.REFRESH_BUFFER_SECONDS):
            return credentials.access_token

        if await self.refresh():
            refreshed = self.provider.read_credentials()
            return refreshed.access_token if refreshed else None

        # Refresh failed transiently; the old token may still be good
        current = self.provider.read_credentials()
        if current is not None and not current.is_expired():
            return current.access_token
        return None

    async def refresh(self) -> bool:
        """Refresh the access token, joining an in-flight refresh if any."""
        if self._refresh_task is None:
            task = asyncio.ensure_future(self._run_refresh())
            task.add_done_callback(self._refresh_done)
            self._refresh_task = task
        return await asyncio.shield(self._refresh_task)

    def _refresh_done(self, task: "asyncio.Task[bool]") -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _run_refresh(self) -> bool:
        credentials = self.provider.read_credentials()
        if credentials is None or not credentials.refresh_token:
            logger.debug("No refresh token available")
            return False
        try:
            refreshed = await self._exchange_refresh_token(credentials.refresh_token)
        except CredentialsRejected:
            logger.warning("Refresh token expired or invalid. Please log in again.")
            self._invalidate()
            return False
        except TransportError as exc:
            logger.warning("Token refresh failed: %s", exc)
            return False

        self.provider.write_credentials(refreshed)
        self._arm_timer()
        return True

    async def _get_api_key(self) -> str:
        if self.context.api_key:
            return self.context.api_key
        client = self.context.get_http_client()
        try:
            response = await client.get(f"{self.context.config.auth_url}/config.json")
        except httpx.HTTPError as exc:
            raise TransportError(f"Cannot fetch auth config: {exc}") from exc
        if response.status_code != 200:
            raise TransportError(f"Auth config request failed: {response.status_code}")
        try:
            api_key = response.json()["apiKey"]
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError("Auth config has no API key") from exc
        self.context.api_key = api_key
        return api_key

    async def _exchange_refresh_token(self, refresh_token: str) -> Credentials:
        """POST the refresh grant.

        Raises:
            CredentialsRejected: the endpoint answered 400 or 401.
            TransportError: network failure or any other unsuccessful answer.
        """
        api_key = await self._get_api_key()
        client = self.context.get_http_client()
        auth_origin = urlparse(self.context.config.auth_url)
        try:
            response = await client.post(
                self.token_url,
                params={"key": api_key},
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                headers={"Referer": f"{auth_origin.scheme}://{auth_origin.netloc}"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Cannot reach token endpoint: {exc}") from exc

        if response.status_code in (400, 401):
            raise CredentialsRejected(f"Refresh rejected: {response.status_code}")
        if response.status_code != 200:
            raise TransportError(f"Refresh failed: {response.status_code}")

        try:
            data = response.json()
            access_token = data.get("id_token") or data["access_token"]
            expires_in = float(data["expires_in"])
        except (ValueError, KeyError, TypeError) as exc:
            raise TransportError("Invalid token endpoint response") from exc

        return Credentials(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or refresh_token,
            expires_at=time.time() + expires_in,
        )

    async def login(self, app_name: str = "rool") -> None:
        if not self.supports(CAP_LOGIN):
            raise NotAuthenticated(f"{self.provider.kind} provider does not support login")
        await self.provider.login(app_name)
        self._arm_timer()
        self.notifier.emit("auth_state_changed", True)

    def process_callback(self, fragment: str) -> bool:
        """Hand a login callback to providers that can take one."""
        if not self.supports(CAP_CALLBACK):
            return False
        try:
            self.provider.process_callback(fragment)  # type: ignore[attr-defined]
        except NotAuthenticated:
            return False
        self._arm_timer()
        self.notifier.emit("auth_state_changed", True)
        return True

    def logout(self) -> None:
        self._invalidate()

    def _invalidate(self) -> None:
        self._cancel_timer()
        self.provider.clear_credentials()
        self.notifier.emit("auth_state_changed", False)

    def resume(self) -> None:
        """Re-arm the refresh timer after the host was suspended."""
        if self.provider.read_credentials() is not None:
            self._arm_timer()

    def get_auth_user(self) -> AuthUser:
        credentials = self.provider.read_credentials()
        return decode_auth_user(credentials.access_token if credentials else None)

    def get_storage(self) -> Optional[dict[str, Any]]:
        if not self.supports(CAP_STORAGE):
            return None
        return self.provider.get_storage()

    def set_storage(self, data: dict[str, Any]) -> None:
        if self.supports(CAP_STORAGE):
            self.provider.set_storage(data)

    def close(self) -> None:
        self._closed = True
        self._cancel_timer()
        for task in list(self._background):
            task.cancel()
        self.notifier.clear()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm_timer(self) -> None:
        if self._closed:
            return
        credentials = self.provider.read_credentials()
        if credentials is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; refresh timer not armed")
            return
        delay = max(0.0, credentials.expires_at - self.REFRESH_BUFFER_SECONDS - time.time())
        self._schedule_timer(loop, delay)

    def _schedule_timer(self, loop: asyncio.AbstractEventLoop, delay: float) -> None:
        self._cancel_timer()
        self._timer = loop.call_later(delay, self._on_timer)
        logger.debug("Token refresh scheduled in %.0fs", delay)

    def _on_timer(self) -> None:
        self._timer = None
        if self._closed:
            return
        task = asyncio.ensure_future(self._scheduled_refresh())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _scheduled_refresh(self) -> None:
        """Timer-driven refresh. Transient failures retry after ``RETRY_DELAY_SECONDS``."""
        try:
            if await self.refresh():
                return
            still_signed_in = self.provider.read_credentials() is not None
        except Exception:
            logger.exception("Scheduled token refresh failed")
            still_signed_in = True
        if still_signed_in and not self._closed:
            logger.info("Retrying token refresh in %.0fs", self.RETRY_DELAY_SECONDS)
            self._schedule_timer(asyncio.get_running_loop(), self.RETRY_DELAY_SECONDS)
