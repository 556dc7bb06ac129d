"""
Security headers for CMS responses.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..observability.logging import get_logger


class CSPDirective(Enum):
    """Content Security Policy directives."""
    DEFAULT_SRC = "default-src"
    SCRIPT_SRC = "script-src"
    STYLE_SRC = "style-src"
    IMG_SRC = "img-src"
    CONNECT_SRC = "connect-src"
    FONT_SRC = "font-src"
    OBJECT_SRC = "object-src"
    MEDIA_SRC = "media-src"
    FRAME_SRC = "frame-src"


class ReferrerPolicy(Enum):
    """Referrer policy values."""
    NO_REFERRER = "no-referrer"
    NO_REFERRER_WHEN_DOWNGRADE = "no-referrer-when-downgrade"
    ORIGIN = "origin"
    ORIGIN_WHEN_CROSS_ORIGIN = "origin-when-cross-origin"
    SAME_ORIGIN = "same-origin"
    STRICT_ORIGIN = "strict-origin"
    STRICT_ORIGIN_WHEN_CROSS_ORIGIN = "strict-origin-when-cross-origin"
    UNSAFE_URL = "unsafe-url"


# Headers that identify the server stack
REMOVED_HEADERS = ("server", "x-powered-by")


@dataclass
class SecurityHeadersConfig:
    """Configuration for security headers."""

    # Content Security Policy, as served by the CMS admin and blog frontends
    enable_csp: bool = True
    csp_directives: Dict[CSPDirective, List[str]] = field(default_factory=lambda: {
        CSPDirective.DEFAULT_SRC: ["'self'"],
        CSPDirective.STYLE_SRC: ["'self'", "'unsafe-inline'", "https://fonts.googleapis.com"],
        CSPDirective.FONT_SRC: ["'self'", "https://fonts.gstatic.com"],
        CSPDirective.IMG_SRC: ["'self'", "data:", "https:", "blob:"],
        CSPDirective.SCRIPT_SRC: ["'self'", "'unsafe-inline'"],
        CSPDirective.OBJECT_SRC: ["'none'"],
        CSPDirective.MEDIA_SRC: ["'self'"],
        CSPDirective.FRAME_SRC: ["'none'"],
        CSPDirective.CONNECT_SRC: ["'self'", "https://api.github.com", "https://accounts.google.com"],
    })
    csp_report_only: bool = False

    # HSTS (HTTP Strict Transport Security)
    enable_hsts: bool = True
    hsts_max_age: int = 31536000  # 1 year
    hsts_include_subdomains: bool = True
    hsts_preload: bool = True

    x_frame_options: str = "DENY"
    referrer_policy: ReferrerPolicy = ReferrerPolicy.STRICT_ORIGIN_WHEN_CROSS_ORIGIN

    # Additional custom headers
    custom_headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Any) -> "SecurityHeadersConfig":
        return cls(
            enable_csp=settings.csp_enabled,
            csp_report_only=settings.csp_report_only,
            enable_hsts=settings.hsts_enabled,
            hsts_max_age=settings.hsts_max_age,
            hsts_include_subdomains=settings.hsts_include_subdomains,
            hsts_preload=settings.hsts_preload,
            x_frame_options=settings.x_frame_options,
            referrer_policy=ReferrerPolicy(settings.referrer_policy),
            custom_headers=dict(settings.security_headers_custom),
        )


class SecurityHeadersManager:
    """Builds the security header set applied to every response."""

    def __init__(self, config: Optional[SecurityHeadersConfig] = None):
        self.config = config or SecurityHeadersConfig()
        self.logger = get_logger("security_headers")
        self._headers = self._build_headers()

    @classmethod
    def from_settings(cls, settings: Any) -> "SecurityHeadersManager":
        """Build the manager and add the configured extra CSP sources."""
        manager = cls(SecurityHeadersConfig.from_settings(settings))
        for directive, sources in settings.csp_extra_sources.items():
            for source in sources:
                manager.add_csp_source(CSPDirective(directive), source)
        return manager

    def get_security_headers(self) -> Dict[str, str]:
        """Headers to add to a response."""
        return dict(self._headers)

    def raw_headers(self) -> List[tuple]:
        """The header set as ASGI ``(name, value)`` byte pairs."""
        return [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in self._headers.items()
        ]

    def apply(self, headers: List[tuple]) -> List[tuple]:
        """
        Merge the security headers into raw ASGI response headers.

        Server identification headers are removed and any header the handler
        already set under one of our names is replaced.
        """
        ours = self.raw_headers()
        replaced = {name for name, _ in ours}
        kept = [
            (name, value) for name, value in headers
            if name.lower() not in replaced and name.lower().decode("latin-1") not in REMOVED_HEADERS
        ]
        return kept + ours

    def _build_headers(self) -> Dict[str, str]:
        headers = {
            "X-Content-Type-Options": "nosniff",
            "X-DNS-Prefetch-Control": "off",
            "X-Download-Options": "noopen",
            "X-Permitted-Cross-Domain-Policies": "none",
            "X-Frame-Options": self.config.x_frame_options,
            "Referrer-Policy": self.config.referrer_policy.value,
        }

        if self.config.enable_csp:
            csp_header = self._build_csp_header()
            if csp_header:
                header_name = ("Content-Security-Policy-Report-Only"
                               if self.config.csp_report_only else "Content-Security-Policy")
                headers[header_name] = csp_header

        if self.config.enable_hsts:
            hsts_value = f"max-age={self.config.hsts_max_age}"
            if self.config.hsts_include_subdomains:
                hsts_value += "; includeSubDomains"
            if self.config.hsts_preload:
                hsts_value += "; preload"
            headers["Strict-Transport-Security"] = hsts_value

        headers.update(self.config.custom_headers)
        return headers

    def _build_csp_header(self) -> str:
        """Build Content Security Policy header value."""
        directives = []

        for directive, sources in self.config.csp_directives.items():
            if sources:
                directives.append(f"{directive.value} {' '.join(sources)}")

        return "; ".join(directives)

    def add_csp_source(self, directive: CSPDirective, source: str):
        """Add a source to a CSP directive."""
        sources = self.config.csp_directives.setdefault(directive, [])
        if source not in sources:
            sources.append(source)
            self._headers = self._build_headers()
            self.logger.info("Added CSP source", directive=directive.value, source=source)
