"""
Auth-flow calls against the backend: login, refresh and registration.

These endpoints are exempt from the refresh/terminate logic of the request
pipeline (a 401 from /auth/login means wrong password, not an expired
session), so every call here is sent with auth_flow=True and failures are
turned into ApiResult values instead of exceptions.

The backend is inconsistent about the refresh token's spelling
(`refreshToken` or `refresh_token`); both are accepted.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Generic, Optional, TypeVar

import httpx
import structlog

from ..utils.error_classifier import extract_message, parse_body
from .credential_store import Credentials, UserProfile

if TYPE_CHECKING:
    from ..clients.api_client import AuthenticatedClient

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class ApiResult(Generic[T]):
    """Outcome of a backend call that never raises for HTTP errors."""

    success: bool
    data: Optional[T] = None
    message: Optional[str] = None
    status: Optional[int] = None


@dataclass
class LoginResult:
    user: UserProfile
    credentials: Credentials


def normalize_email(email: Optional[str]) -> str:
    return str(email or "").strip().lower()


def _pick_refresh_token(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get("refreshToken") or payload.get("refresh_token")


def _map_user(usuario: Dict[str, Any]) -> UserProfile:
    """Map the backend's `usuario` (Portuguese field names) to UserProfile."""
    return UserProfile(
        id=str(usuario.get("id", "")),
        name=usuario.get("nome") or usuario.get("name") or "",
        email=usuario.get("email", ""),
        role=usuario.get("role") or "admin",
    )


def _failure(error: httpx.HTTPStatusError, default_message: str) -> ApiResult:
    body = parse_body(error.response)
    message = extract_message(body) or default_message
    return ApiResult(success=False, message=message, status=error.response.status_code)


class AuthService:
    """Login, refresh and registration over the authenticated client."""

    def __init__(self, client: "AuthenticatedClient"):
        self.client = client
        self.settings = client.settings

    async def login(self, email: str, senha: str) -> ApiResult[LoginResult]:
        """
        Exchange e-mail and password for a token pair and the user profile.

        Does not store anything; AuthenticatedClient.login() does.
        """
        normalized_email = normalize_email(email)
        try:
            response = await self.client.post(
                self.settings.login_endpoint,
                json={"email": normalized_email, "senha": senha},
                auth_flow=True,
            )
        except httpx.HTTPStatusError as e:
            logger.info("Login rejected", status_code=e.response.status_code)
            return _failure(e, "Erro na autenticação")
        except httpx.TransportError as e:
            logger.warning("Login request failed", error=str(e))
            return ApiResult(success=False, message=str(e) or "Erro na autenticação")

        payload = parse_body(response)
        status = response.status_code
        if not isinstance(payload, dict):
            return ApiResult(success=False, message="Resposta inválida do servidor", status=status)

        if payload.get("success") and payload.get("token"):
            usuario = payload.get("usuario")
            if not usuario:
                return ApiResult(
                    success=False, message="Usuário não encontrado na resposta", status=status
                )

            result = LoginResult(
                user=_map_user(usuario),
                credentials=Credentials(
                    access_token=payload["token"],
                    refresh_token=_pick_refresh_token(payload),
                ),
            )
            logger.info(
                "Login succeeded",
                user_id=result.user.id,
                has_refresh_token=bool(result.credentials.refresh_token),
            )
            return ApiResult(success=True, data=result, status=status)

        return ApiResult(
            success=False,
            message=payload.get("message") or "Resposta inválida do servidor",
            status=status,
        )

    async def refresh_token(self, refresh_token: str) -> ApiResult[Credentials]:
        """
        Exchange a refresh token for a new access token.

        HTTP rejections come back as a failed ApiResult. Transport errors
        propagate so the caller can decide whether to retry.
        """
        try:
            response = await self.client.post(
                self.settings.refresh_endpoint,
                json={"refreshToken": refresh_token},
                auth_flow=True,
            )
        except httpx.HTTPStatusError as e:
            return _failure(e, "Erro ao renovar sessão")

        payload = parse_body(response)
        status = response.status_code
        if isinstance(payload, dict) and payload.get("success") and payload.get("token"):
            return ApiResult(
                success=True,
                data=Credentials(
                    access_token=payload["token"],
                    refresh_token=_pick_refresh_token(payload),
                ),
                status=status,
            )

        message = payload.get("message") if isinstance(payload, dict) else None
        return ApiResult(
            success=False,
            message=message or "Não foi possível renovar a sessão",
            status=status,
        )

    async def register(self, nome: str, email: str, senha: str) -> ApiResult[UserProfile]:
        """Create an account. The caller still has to log in afterwards."""
        try:
            response = await self.client.post(
                self.settings.register_endpoint,
                json={"nome": nome, "email": normalize_email(email), "senha": senha},
                auth_flow=True,
            )
        except httpx.HTTPStatusError as e:
            return _failure(e, "Erro no registro")
        except httpx.TransportError as e:
            logger.warning("Register request failed", error=str(e))
            return ApiResult(success=False, message=str(e) or "Erro no registro")

        payload = parse_body(response)
        status = response.status_code
        if isinstance(payload, dict) and payload.get("success") and payload.get("data"):
            return ApiResult(success=True, data=_map_user(payload["data"]), status=status)

        message = payload.get("message") if isinstance(payload, dict) else None
        return ApiResult(
            success=False, message=message or "Resposta inválida do servidor", status=status
        )
