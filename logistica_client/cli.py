from __future__ import annotations

import asyncio
import json
import sys
from typing import Optional

import click
import httpx

from .clients.api_client import AuthenticatedClient
from .config import get_settings
from .services.credential_store import create_credential_store
from .services.session_terminator import RedirectSessionTerminator
from .utils.crypto import generate_key
from .utils.error_classifier import parse_body
from .utils.logging import configure_logging
from .utils.notifications import Notification, NotificationLevel, get_notification_center

EXIT_SESSION_ENDED = 2


class ConsoleNavigator:
    """Stands in for the login screen: tells the user to log in again."""

    def __init__(self, login_path: str = "/login"):
        self.login_path = login_path
        self._path = "/"

    @property
    def current_path(self) -> str:
        return self._path

    def navigate(self, url: str, replace: bool = False) -> None:
        self._path = self.login_path
        click.echo("Execute `logistica login <email>` para entrar novamente.", err=True)


def _echo_notification(notification: Notification) -> None:
    prefix = "erro" if notification.level == NotificationLevel.ERROR else notification.level.value
    line = f"[{prefix}] {notification.title}"
    if notification.description:
        line += f" - {notification.description}"
    click.echo(line, err=True)


def _build_client() -> tuple[AuthenticatedClient, RedirectSessionTerminator]:
    settings = get_settings()
    notifier = get_notification_center()
    notifier.add_sink(_echo_notification)
    store = create_credential_store(settings)
    terminator = RedirectSessionTerminator(
        store,
        notifier,
        ConsoleNavigator(settings.login_path),
        login_path=settings.login_path,
        default_reason=settings.session_expired_message,
    )
    client = AuthenticatedClient(settings, store=store, notifier=notifier, terminator=terminator)
    return client, terminator


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log at DEBUG level.")
def cli(verbose: bool) -> None:
    """Caramello Logística API client."""
    settings = get_settings()
    configure_logging(
        log_level="DEBUG" if verbose else settings.log_level,
        app_env=settings.app_env,
        app_version=settings.app_version,
    )


@cli.command("login")
@click.argument("email", type=str)
@click.option("--password", prompt="Senha", hide_input=True, help="Account password.")
def login_cmd(email: str, password: str) -> None:
    """Log in and persist the session."""

    async def _run() -> int:
        client, _ = _build_client()
        async with client:
            result = await client.login(email, password)
        if not result.success or result.data is None:
            click.echo(f"Falha na autenticação: {result.message}", err=True)
            return 1
        click.echo(f"Bem-vindo, {result.data.user.name}!")
        return 0

    sys.exit(asyncio.run(_run()))


@cli.command("logout")
def logout_cmd() -> None:
    """End the stored session."""

    async def _run() -> None:
        client, _ = _build_client()
        async with client:
            client.logout("Você saiu da sua conta.")

    asyncio.run(_run())


@cli.command("whoami")
def whoami_cmd() -> None:
    """Show the logged-in user."""
    store = create_credential_store(get_settings())
    user = store.get_user()
    if user is None or not store.has_session():
        click.echo("Nenhuma sessão ativa.", err=True)
        sys.exit(1)
    profile = {"id": user.id, "name": user.name, "email": user.email, "role": user.role}
    click.echo(json.dumps(profile, indent=2, ensure_ascii=False))


@cli.command("keygen")
def keygen_cmd() -> None:
    """Print a new key for FERNET_KEY."""
    click.echo(generate_key())


@cli.command("reseal")
def reseal_cmd() -> None:
    """Re-encrypt the stored session under the current FERNET_KEY."""
    settings = get_settings()
    if not settings.fernet_key:
        click.echo("FERNET_KEY não configurada.", err=True)
        sys.exit(1)
    count = create_credential_store(settings).reseal()
    click.echo(f"{count} valor(es) recriptografado(s).")


@cli.command("request")
@click.argument("method", type=click.Choice(["GET", "POST", "PUT", "PATCH", "DELETE"], case_sensitive=False))
@click.argument("path", type=str)
@click.option("--json", "json_body", default=None, help="JSON request body.")
def request_cmd(method: str, path: str, json_body: Optional[str]) -> None:
    """Send an authenticated request and print the JSON response."""
    try:
        body = json.loads(json_body) if json_body else None
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="--json")

    async def _run() -> int:
        client, terminator = _build_client()
        async with client:
            kwargs = {"json": body} if body is not None else {}
            try:
                response = await client.request(method.upper(), path, **kwargs)
            except httpx.HTTPStatusError as e:
                if terminator.terminations:
                    return EXIT_SESSION_ENDED
                click.echo(json.dumps(parse_body(e.response), indent=2, ensure_ascii=False), err=True)
                return 1
            except httpx.TransportError as e:
                click.echo(f"Falha de rede: {e}", err=True)
                return 1
        click.echo(json.dumps(parse_body(response), indent=2, ensure_ascii=False))
        return 0

    sys.exit(asyncio.run(_run()))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
