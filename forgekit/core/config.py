"""ForgeKit runtime configuration and settings."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple


def _default_home() -> Path:
    return Path.home() / ".forgekit"


@dataclass
class ForgeConfig:
    """Runtime configuration for ForgeKit operations.

    Built once at CLI startup and passed to every service that needs it, so
    tests can construct fixed configurations directly.

    Attributes:
        home_dir: Directory holding the credential file and master key
        token_override: Bearer token taken from FORGEKIT_TOKEN, if any
        login_url: Identity provider login page
        callback_host: Host the login callback listener binds to
        callback_port: Preferred callback port (incremented on conflict)
        port_attempts: Number of ports tried before giving up
        login_timeout: Seconds to wait for the browser callback (default: 180)
        api_base_url: Base URL of the deploy API
        request_timeout: Timeout in seconds for ordinary API calls (default: 30)
        upload_timeout: Timeout in seconds for bundle uploads (default: 300)
    """

    home_dir: Path = field(default_factory=_default_home)
    token_override: Optional[str] = None

    # Login handshake
    login_url: str = "https://forgekit.ai/login"
    callback_host: str = "localhost"
    callback_port: int = 3456
    port_attempts: int = 10
    login_timeout: float = 180.0

    # Deploy API
    api_base_url: str = "https://api.forgekit.ai"
    request_timeout: float = 30.0
    upload_timeout: float = 300.0

    # Transport hardening
    allowed_domains: Tuple[str, ...] = ("forgekit.ai",)
    max_chain_depth: int = 5
    max_response_bytes: int = 50 * 1024 * 1024
    max_redirects: int = 3

    # Retry policy (attempt 1 is immediate, then delay doubles)
    build_attempts: int = 3
    build_retry_delay: float = 2.0
    upload_attempts: int = 3
    upload_retry_delay: float = 5.0

    @property
    def credential_file(self) -> Path:
        return self.home_dir / "config.json"

    @property
    def key_file(self) -> Path:
        return self.home_dir / ".key"

    def api_url(self, path: str) -> str:
        return f"{self.api_base_url.rstrip('/')}/{path.lstrip('/')}"

    @property
    def deploy_url(self) -> str:
        return self.api_url("deploy_cli")

    def redeploy_url(self, slug: str) -> str:
        return self.api_url(f"redeploy/{slug}")

    def deployment_url(self, slug: str) -> str:
        return self.api_url(f"deployment/{slug}")

    @classmethod
    def from_env(cls) -> "ForgeConfig":
        """Create config from environment variables.

        Environment variables:
            FORGEKIT_HOME: Credential directory (default ~/.forgekit)
            FORGEKIT_TOKEN: Bearer token override
            FORGEKIT_LOGIN_URL: Identity provider login page
            FORGEKIT_CALLBACK_HOST: Login callback host
            FORGEKIT_CALLBACK_PORT: Preferred login callback port
            FORGEKIT_LOGIN_TIMEOUT: Login timeout in seconds
            FORGEKIT_API_BASE_URL: Deploy API base URL
            FORGEKIT_REQUEST_TIMEOUT: API request timeout in seconds
            FORGEKIT_UPLOAD_TIMEOUT: Upload timeout in seconds

        Returns:
            ForgeConfig instance with values from environment or defaults
        """
        home = os.getenv("FORGEKIT_HOME")
        return cls(
            home_dir=Path(home).expanduser() if home else _default_home(),
            token_override=os.getenv("FORGEKIT_TOKEN") or None,
            login_url=os.getenv("FORGEKIT_LOGIN_URL", cls.login_url),
            callback_host=os.getenv("FORGEKIT_CALLBACK_HOST", cls.callback_host),
            callback_port=int(
                os.getenv("FORGEKIT_CALLBACK_PORT", cls.callback_port)
            ),
            login_timeout=float(
                os.getenv("FORGEKIT_LOGIN_TIMEOUT", cls.login_timeout)
            ),
            api_base_url=os.getenv("FORGEKIT_API_BASE_URL", cls.api_base_url),
            request_timeout=float(
                os.getenv("FORGEKIT_REQUEST_TIMEOUT", cls.request_timeout)
            ),
            upload_timeout=float(
                os.getenv("FORGEKIT_UPLOAD_TIMEOUT", cls.upload_timeout)
            ),
        )
