"""Secrets resolution and scoped credential handles.

Registry credentials, remote-channel credentials and cloud credentials
are injected by the surrounding environment. This module resolves them
through pluggable backends and hands them to stages as short-lived
:class:`CredentialScope` handles.

Manifesto:
    Credentials must never end up in ambient state:
    - **Redacted by default:** ``SecretValue`` renders ``[REDACTED]``
    - **Scoped:** a stage acquires a handle on entry and the handle is
      discarded on every exit path (success, error, cancellation)
    - **Layered resolution:** env vars, then mounted files

Architecture::

    SecretsResolver([EnvSecretBackend(), FileSecretBackend()])
            │ resolve("registry_password")
            ▼
    CredentialScope(resolver, username_key=..., password_key=...)
            │ with scope as cred:      # acquired at stage entry
            │     login(cred.username, cred.password.get_secret())
            ▼
    scope exit → handle discarded, further use raises

Examples:
    >>> resolver = SecretsResolver([DictSecretBackend({"registry_password": "s3cret"})])
    >>> with CredentialScope(resolver, password_key="registry_password") as cred:
    ...     str(cred.password)
    '[REDACTED]'

Tags:
    secrets, credentials, security, release-spine
"""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from release_spine.core.errors import MissingCredentialError

_SENTINEL = object()


# ---------------------------------------------------------------------------
# SecretValue wrapper
# ---------------------------------------------------------------------------


class SecretValue:
    """Wrapper for secret values that prevents accidental logging.

    The string representation shows ``[REDACTED]`` instead of the value.
    Use ``.get_secret()`` to access the actual value.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def get_secret(self) -> str:
        """Get the actual secret value."""
        return self._value

    def __str__(self) -> str:
        return "[REDACTED]"

    def __repr__(self) -> str:
        return "SecretValue('[REDACTED]')"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretValue):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)

    def __bool__(self) -> bool:
        return bool(self._value)


# ---------------------------------------------------------------------------
# Secret backends
# ---------------------------------------------------------------------------


class SecretBackend(ABC):
    """Abstract base for secret backends."""

    @abstractmethod
    def get(self, name: str) -> str | None:
        """Retrieve a secret by name, or None if this backend lacks it."""
        ...


class EnvSecretBackend(SecretBackend):
    """Resolve secrets from environment variables.

    Tries ``{KEY}`` then ``RELEASE_SPINE_SECRET_{KEY}``.
    """

    def get(self, name: str) -> str | None:
        key_upper = name.upper()
        for pattern in (key_upper, f"RELEASE_SPINE_SECRET_{key_upper}"):
            value = os.environ.get(pattern)
            if value is not None:
                return value
        return None


class FileSecretBackend(SecretBackend):
    """Resolve secrets from files (Docker / Kubernetes mounted secrets)."""

    def __init__(self, secrets_dir: str | Path = "/run/secrets"):
        self.secrets_dir = Path(secrets_dir)
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> str | None:
        with self._lock:
            if name in self._cache:
                return self._cache[name]

        secret_path = self.secrets_dir / name
        if not secret_path.is_file():
            return None

        try:
            content = secret_path.read_text().strip()
        except OSError:
            return None
        with self._lock:
            self._cache[name] = content
        return content


class DictSecretBackend(SecretBackend):
    """In-memory secret backend for testing.

    NOT for production use; stores secrets in plain memory.
    """

    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets) if secrets else {}

    def get(self, name: str) -> str | None:
        return self._secrets.get(name)


# ---------------------------------------------------------------------------
# SecretsResolver
# ---------------------------------------------------------------------------


class SecretsResolver:
    """Multi-backend secrets resolver.

    Args:
        backends: Backends to try in order. Defaults to environment
            variables followed by ``/run/secrets``.
    """

    def __init__(self, backends: list[SecretBackend] | None = None):
        if backends is None:
            backends = [EnvSecretBackend(), FileSecretBackend()]
        self._backends: list[SecretBackend] = list(backends)

    def resolve(self, key: str, default: Any = _SENTINEL) -> str | None:
        """Resolve a secret by key.

        Raises:
            MissingCredentialError: If no backend has the secret and no default given
        """
        tried: list[str] = []
        for backend in self._backends:
            tried.append(type(backend).__name__)
            value = backend.get(key)
            if value is not None:
                return value

        if default is not _SENTINEL:
            return default

        raise MissingCredentialError(
            f"Secret not found: {key} (tried: {', '.join(tried) or 'no backends'})"
        )

    def resolve_secret_value(self, key: str) -> SecretValue:
        """Resolve a secret and wrap it in SecretValue for safe handling."""
        return SecretValue(self.resolve(key))  # type: ignore[arg-type]

    def contains(self, key: str) -> bool:
        return any(backend.get(key) is not None for backend in self._backends)


# ---------------------------------------------------------------------------
# Scoped credential handles
# ---------------------------------------------------------------------------


class Credential:
    """A username/password pair valid only inside its :class:`CredentialScope`."""

    __slots__ = ("_username", "_password", "_active")

    def __init__(self, username: str | None, password: SecretValue):
        self._username = username
        self._password = password
        self._active = True

    @property
    def username(self) -> str | None:
        self._check()
        return self._username

    @property
    def password(self) -> SecretValue:
        self._check()
        return self._password

    @property
    def active(self) -> bool:
        return self._active

    def discard(self) -> None:
        self._active = False
        self._password = SecretValue("")
        self._username = None

    def _check(self) -> None:
        if not self._active:
            raise RuntimeError("credential used outside of its scope")

    def __repr__(self) -> str:
        state = "active" if self._active else "discarded"
        return f"Credential(username={self._username!r}, password=[REDACTED], {state})"


class CredentialScope:
    """Acquire a credential on entry and discard it on every exit path.

    Parameters
    ----------
    resolver
        Resolver used to look up the secret keys.
    password_key
        Secret key holding the password or token.
    username_key
        Secret key holding the username. ``username`` is used verbatim
        when the key is not set.
    username
        Literal username (for registries where the user is not secret).
    """

    def __init__(
        self,
        resolver: SecretsResolver,
        *,
        password_key: str,
        username_key: str | None = None,
        username: str | None = None,
    ) -> None:
        self.resolver = resolver
        self.password_key = password_key
        self.username_key = username_key
        self.username = username
        self._credential: Credential | None = None

    def __enter__(self) -> Credential:
        username = self.username
        if self.username_key:
            username = self.resolver.resolve(self.username_key)
        password = self.resolver.resolve_secret_value(self.password_key)
        self._credential = Credential(username, password)
        return self._credential

    def __exit__(self, *exc: Any) -> None:
        if self._credential is not None:
            self._credential.discard()
            self._credential = None


__all__ = [
    "Credential",
    "CredentialScope",
    "DictSecretBackend",
    "EnvSecretBackend",
    "FileSecretBackend",
    "SecretBackend",
    "SecretValue",
    "SecretsResolver",
]
