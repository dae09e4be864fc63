from __future__ import annotations

from typing import Protocol

import typer


class AuthError(RuntimeError):
    pass


class LoginPrompts(Protocol):
    def phone(self) -> str: ...

    def code(self) -> str: ...

    def password(self) -> str: ...


def _prompt(text: str, *, what: str, hide_input: bool = False) -> str:
    try:
        value = typer.prompt(text, hide_input=hide_input)
    except (typer.Abort, EOFError) as exc:
        raise AuthError(f"failed to read {what}") from exc
    value = str(value).strip()
    if not value:
        raise AuthError(f"empty {what}")
    return value


class TerminalPrompts:
    """Interactive login on the controlling terminal."""

    def phone(self) -> str:
        return _prompt(
            "Enter your phone number (e.g. +1234567890)", what="phone number"
        )

    def code(self) -> str:
        return _prompt("Enter Telegram verification code", what="verification code")

    def password(self) -> str:
        return _prompt("Enter 2FA password", what="password", hide_input=True)
