# src/bookmark_manager/auth_utils.py
import base64
import hashlib
import secrets
import time
import typing
from urllib.parse import urlencode

import httpx

from .config import settings, Settings
from .models import OAuthRedirect, Session


class AuthExchangeError(Exception):
    def __init__(self, status_code: int, message: typing.Optional[str] = None):
        self.status_code = status_code
        self.message = message
        super().__init__(message or f"Code exchange failed with status {status_code}.")


class AuthSessionError(Exception):
    def __init__(self, status_code: int, message: typing.Optional[str] = None):
        self.status_code = status_code
        self.message = message
        super().__init__(message or f"Session lookup failed with status {status_code}.")


# --- PKCE helpers ---

def generate_code_verifier() -> str:
    return secrets.token_urlsafe(64)[:96]


def code_challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("msg") or body.get("message") or body.get("error") or body)
    return str(body)


class SupabaseAuth:
    """
    Session Store backed by the Supabase auth (GoTrue) REST API.

    The browser never sees the authorization code exchange: `/login` builds the
    authorize URL and keeps the PKCE verifier in a cookie, and the callback
    route trades code + verifier for a session here.
    """

    def __init__(self, config: Settings = settings, client: typing.Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client

    def _headers(self, access_token: typing.Optional[str] = None) -> dict:
        headers = {"apikey": self.config.SUPABASE_ANON_KEY, "Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _post(self, path: str, params: dict, json: dict, access_token: typing.Optional[str] = None) -> httpx.Response:
        url = f"{self.config.AUTH_URL}{path}"
        if self._client is not None:
            return await self._client.post(url, params=params, json=json, headers=self._headers(access_token),
                                           timeout=self.config.HTTP_TIMEOUT_SECONDS)
        async with httpx.AsyncClient() as client:
            return await client.post(url, params=params, json=json, headers=self._headers(access_token),
                                     timeout=self.config.HTTP_TIMEOUT_SECONDS)

    async def _get(self, path: str, access_token: str) -> httpx.Response:
        url = f"{self.config.AUTH_URL}{path}"
        if self._client is not None:
            return await self._client.get(url, headers=self._headers(access_token),
                                          timeout=self.config.HTTP_TIMEOUT_SECONDS)
        async with httpx.AsyncClient() as client:
            return await client.get(url, headers=self._headers(access_token),
                                    timeout=self.config.HTTP_TIMEOUT_SECONDS)

    # --- OAuth sign-in ---

    def begin_oauth_sign_in(
            self,
            provider: str,
            redirect_to: str,
            query_params: typing.Optional[typing.Dict[str, str]] = None,
    ) -> OAuthRedirect:
        """
        Builds the authorize URL for `provider`. The caller performs the navigation
        and must keep `code_verifier` until the callback comes back.
        """
        verifier = generate_code_verifier()
        params = {
            "provider": provider,
            "redirect_to": redirect_to,
            "code_challenge": code_challenge_for(verifier),
            "code_challenge_method": "s256",
        }
        params.update(query_params or {})
        url = f"{self.config.AUTH_URL}/authorize?{urlencode(params)}"
        print(f"AUTH: begin_oauth_sign_in - provider: {provider}, redirect_to: {redirect_to}")
        return OAuthRedirect(url=url, code_verifier=verifier)

    async def exchange_code_for_session(self, code: str, code_verifier: typing.Optional[str]) -> Session:
        try:
            response = await self._post(
                "/token",
                params={"grant_type": "pkce"},
                json={"auth_code": code, "code_verifier": code_verifier or ""},
            )
        except httpx.RequestError as e:
            print(f"AUTH: exchange_code_for_session - Request error: {str(e)}")
            raise AuthExchangeError(500, f"Could not reach auth service: {str(e)}") from e

        if response.status_code != 200:
            message = _error_message(response)
            print(f"AUTH: exchange_code_for_session - Error {response.status_code}: {message}")
            raise AuthExchangeError(response.status_code, message)

        session = self._session_from_token_payload(response.json(), AuthExchangeError)
        print(f"AUTH: exchange_code_for_session - Session established for user {session.user_id}")
        return session

    # --- Existing sessions ---

    async def get_session(
            self,
            access_token: typing.Optional[str],
            refresh_token: typing.Optional[str],
    ) -> typing.Optional[Session]:
        """
        Resolves the session behind a token pair. An access token the auth service no
        longer accepts is renewed with the refresh token; returns None when neither works.
        """
        if not access_token and not refresh_token:
            return None

        if access_token:
            response = await self._get("/user", access_token)
            if response.status_code == 200:
                user = response.json()
                if not isinstance(user, dict) or not user.get("id"):
                    raise AuthSessionError(502, "User lookup did not include a user id.")
                return Session(
                    user_id=str(user["id"]),
                    email=user.get("email"),
                    access_token=access_token,
                    refresh_token=refresh_token or "",
                )
            if response.status_code not in (401, 403):
                raise AuthSessionError(response.status_code, _error_message(response))

        if not refresh_token:
            return None
        return await self.refresh_session(refresh_token)

    async def refresh_session(self, refresh_token: str) -> typing.Optional[Session]:
        response = await self._post(
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        if response.status_code in (400, 401, 403):
            print(f"AUTH: refresh_session - Refresh token rejected ({response.status_code}).")
            return None
        if response.status_code != 200:
            raise AuthSessionError(response.status_code, _error_message(response))
        print("AUTH: refresh_session - Access token renewed.")
        return self._session_from_token_payload(response.json(), AuthSessionError)

    async def sign_out(self, session: Session) -> None:
        response = await self._post("/logout", params={"scope": "local"}, json={},
                                    access_token=session.access_token)
        # 401/404: the token is already gone, which is what sign-out wants anyway
        if response.status_code not in (200, 204, 401, 404):
            raise AuthSessionError(response.status_code, _error_message(response))
        print(f"AUTH: sign_out - Session terminated for user {session.user_id}")

    @staticmethod
    def _session_from_token_payload(
            payload: dict,
            error_cls: typing.Type[typing.Union[AuthExchangeError, AuthSessionError]],
    ) -> Session:
        user = payload.get("user") or {}
        if not user.get("id") or not payload.get("access_token"):
            print("AUTH: Token response is missing the user id or access token.")
            raise error_cls(502, "Token response did not include a user id and access token.")
        expires_at = payload.get("expires_at")
        if expires_at is None and payload.get("expires_in") is not None:
            expires_at = int(time.time()) + int(payload["expires_in"])
        return Session(
            user_id=str(user["id"]),
            email=user.get("email"),
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or "",
            expires_at=expires_at,
        )
