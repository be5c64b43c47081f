"""Configuration models for the HttpClient.

:class:`HttpClientConfig` is the declarative, immutable starting point.
:class:`ClientConfiguration` is the live per-client view: its properties may
be changed until the first request is sent, after which it is frozen for the
lifetime of the client.
"""

from __future__ import annotations

import enum
import itertools
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator

from requests.cookies import RequestsCookieJar

from .errors import ConfigurationLockedError, InvalidConfigurationError

if TYPE_CHECKING:
    from .transport import ProxyResolver

_group_counter = itertools.count(1)


class DecompressionMethods(enum.Flag):
    NONE = 0
    GZIP = enum.auto()
    DEFLATE = enum.auto()
    BROTLI = enum.auto()

    @property
    def encodings(self) -> tuple[str, ...]:
        """Content-coding tokens for the enabled methods."""
        tokens = []
        if self & DecompressionMethods.GZIP:
            tokens.append("gzip")
        if self & DecompressionMethods.DEFLATE:
            tokens.append("deflate")
        if self & DecompressionMethods.BROTLI:
            tokens.append("br")
        return tuple(tokens)


class ClientCertificateOption(enum.Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


def _next_connection_group_name() -> str:
    return f"ferry-client-{next(_group_counter)}"


@dataclass(frozen=True)
class HttpClientConfig:
    """Initial configuration for HttpClient behavior."""

    allow_auto_redirect: bool = True
    max_automatic_redirections: int = 50
    automatic_decompression: DecompressionMethods = DecompressionMethods.NONE
    client_certificate_options: ClientCertificateOption = (
        ClientCertificateOption.MANUAL
    )
    use_cookies: bool = True
    use_default_credentials: bool = False
    credentials: Any = None
    use_proxy: bool = True
    proxy: ProxyResolver | None = None
    pre_authenticate: bool = False
    max_request_content_buffer_size: int = sys.maxsize

    def __post_init__(self) -> None:
        if self.max_automatic_redirections <= 0:
            raise InvalidConfigurationError(
                "max_automatic_redirections must be > 0"
            )
        if self.max_request_content_buffer_size < 0:
            raise InvalidConfigurationError(
                "max_request_content_buffer_size must be >= 0"
            )
        if self.proxy is not None and not self.use_proxy:
            raise InvalidConfigurationError(
                "proxy cannot be set when use_proxy is False"
            )


class ClientConfiguration:
    """Per-client settings, frozen once the first request is sent.

    Every setter checks and applies under the same lock that :meth:`lock`
    takes, so a setter racing the first send either lands before it or fails
    with :class:`ConfigurationLockedError`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sent = False
        self._allow_auto_redirect = True
        self._max_automatic_redirections = 50
        self._automatic_decompression = DecompressionMethods.NONE
        self._client_certificate_options = ClientCertificateOption.MANUAL
        self._use_cookies = True
        self._cookie_jar: RequestsCookieJar | None = None
        self._use_default_credentials = False
        self._credentials: Any = None
        self._use_proxy = True
        self._proxy: ProxyResolver | None = None
        self._pre_authenticate = False
        self._max_request_content_buffer_size = sys.maxsize
        self._connection_group_name = _next_connection_group_name()

    @classmethod
    def from_config(cls, config: HttpClientConfig) -> ClientConfiguration:
        configuration = cls()
        configuration.allow_auto_redirect = config.allow_auto_redirect
        configuration.max_automatic_redirections = (
            config.max_automatic_redirections
        )
        configuration.automatic_decompression = config.automatic_decompression
        configuration.client_certificate_options = (
            config.client_certificate_options
        )
        configuration.use_cookies = config.use_cookies
        configuration.use_default_credentials = config.use_default_credentials
        configuration.credentials = config.credentials
        configuration.use_proxy = config.use_proxy
        if config.proxy is not None:
            configuration.proxy = config.proxy
        configuration.pre_authenticate = config.pre_authenticate
        configuration.max_request_content_buffer_size = (
            config.max_request_content_buffer_size
        )
        return configuration

    @contextmanager
    def _modifying(self) -> Iterator[None]:
        with self._lock:
            if self._sent:
                raise ConfigurationLockedError()
            yield

    def lock(self) -> bool:
        """Freeze the configuration. Returns True for the call that froze it."""
        with self._lock:
            if self._sent:
                return False
            self._sent = True
            return True

    @property
    def is_locked(self) -> bool:
        return self._sent

    @property
    def connection_group_name(self) -> str:
        return self._connection_group_name

    @property
    def supports_automatic_decompression(self) -> bool:
        return True

    @property
    def supports_proxy(self) -> bool:
        return True

    @property
    def supports_redirect_configuration(self) -> bool:
        return True

    @property
    def allow_auto_redirect(self) -> bool:
        return self._allow_auto_redirect

    @allow_auto_redirect.setter
    def allow_auto_redirect(self, value: bool) -> None:
        with self._modifying():
            self._allow_auto_redirect = value

    @property
    def max_automatic_redirections(self) -> int:
        return self._max_automatic_redirections

    @max_automatic_redirections.setter
    def max_automatic_redirections(self, value: int) -> None:
        with self._modifying():
            if value <= 0:
                raise InvalidConfigurationError(
                    "max_automatic_redirections must be > 0"
                )
            self._max_automatic_redirections = value

    @property
    def automatic_decompression(self) -> DecompressionMethods:
        return self._automatic_decompression

    @automatic_decompression.setter
    def automatic_decompression(self, value: DecompressionMethods) -> None:
        with self._modifying():
            self._automatic_decompression = value

    @property
    def client_certificate_options(self) -> ClientCertificateOption:
        return self._client_certificate_options

    @client_certificate_options.setter
    def client_certificate_options(self, value: ClientCertificateOption) -> None:
        with self._modifying():
            self._client_certificate_options = value

    @property
    def use_cookies(self) -> bool:
        return self._use_cookies

    @use_cookies.setter
    def use_cookies(self, value: bool) -> None:
        with self._modifying():
            self._use_cookies = value

    @property
    def cookie_jar(self) -> RequestsCookieJar:
        """The cookie jar, created on first access."""
        jar = self._cookie_jar
        if jar is None:
            with self._lock:
                if self._cookie_jar is None:
                    self._cookie_jar = RequestsCookieJar()
                jar = self._cookie_jar
        return jar

    @cookie_jar.setter
    def cookie_jar(self, value: RequestsCookieJar | None) -> None:
        with self._modifying():
            self._cookie_jar = value

    @property
    def use_default_credentials(self) -> bool:
        return self._use_default_credentials

    @use_default_credentials.setter
    def use_default_credentials(self, value: bool) -> None:
        with self._modifying():
            self._use_default_credentials = value

    @property
    def credentials(self) -> Any:
        return self._credentials

    @credentials.setter
    def credentials(self, value: Any) -> None:
        with self._modifying():
            self._credentials = value

    @property
    def use_proxy(self) -> bool:
        return self._use_proxy

    @use_proxy.setter
    def use_proxy(self, value: bool) -> None:
        with self._modifying():
            self._use_proxy = value

    @property
    def proxy(self) -> ProxyResolver | None:
        return self._proxy

    @proxy.setter
    def proxy(self, value: ProxyResolver | None) -> None:
        with self._modifying():
            if not self._use_proxy:
                raise InvalidConfigurationError(
                    "proxy cannot be set when use_proxy is False"
                )
            self._proxy = value

    @property
    def pre_authenticate(self) -> bool:
        return self._pre_authenticate

    @pre_authenticate.setter
    def pre_authenticate(self, value: bool) -> None:
        with self._modifying():
            self._pre_authenticate = value

    @property
    def max_request_content_buffer_size(self) -> int:
        return self._max_request_content_buffer_size

    @max_request_content_buffer_size.setter
    def max_request_content_buffer_size(self, value: int) -> None:
        with self._modifying():
            if value < 0:
                raise InvalidConfigurationError(
                    "max_request_content_buffer_size must be >= 0"
                )
            self._max_request_content_buffer_size = value
