# statslogger/core/config.py
from __future__ import annotations
from typing import List, Tuple, Union
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STATSLOGGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: str = "dev"
    addr: str = ":8080"
    log_level: str = "INFO"

    # Persistence target: saver_url > bucket > data > stdout
    data: str | None = None
    bucket: str | None = None
    credentials: str | None = None
    object_prefix: str = "events"
    saver_url: str | None = None
    saver_timeout: float = 5.0

    # Writer
    max_pending: int = 1024
    write_through: bool = False

    # HTTP
    redirect_url: str = "https://example.com/"
    cors_origins: Union[str, List[str]] = "*"
    cors_max_age: int = 86400
    shutdown_grace: float = 30.0
    idle_timeout: int = 60
    max_header_bytes: int = 1 << 20
    tls_cert: str | None = None
    tls_key: str | None = None

    def parsed_cors(self) -> List[str]:
        v = self.cors_origins
        if v is None or v == "*" or (isinstance(v, list) and v == ["*"]):
            return ["*"]
        if isinstance(v, (list, tuple, set)):
            return [str(o) for o in v]
        # string case: "http://a.com, http://b.com"
        return [o.strip() for o in str(v).split(",") if o.strip()]

    def listen(self) -> Tuple[str, int]:
        """Split ``addr`` into host and port; an empty host means every interface."""
        host, sep, port = self.addr.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"invalid listen address: {self.addr!r}")
        return (host.strip("[]") or "0.0.0.0", int(port))

settings = Settings()
