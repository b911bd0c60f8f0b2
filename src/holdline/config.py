"""Runtime settings loaded from the environment."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclasses.dataclass(frozen=True)
class Settings:
    sip_host: str = "0.0.0.0"
    sip_port: int = 5060
    # None means "detect from the default route"
    server_ip: str | None = None
    rtp_port_min: int = 49000
    rtp_port_max: int = 49100
    rtp_strict_ports: bool = False
    audio: str = "chimes"
    frame_size: int = 320
    log_level: str = "INFO"
    database_url: str | None = None


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from ``HOLDLINE_*`` variables (and ``DATABASE_URL``).

    Callers that want ``.env`` support should run ``load_dotenv()`` first.
    """
    if env is None:
        env = os.environ

    port_min = _int(env, "HOLDLINE_RTP_PORT_MIN", 49000)
    port_max = _int(env, "HOLDLINE_RTP_PORT_MAX", 49100)
    # RTP needs an even port p with p + 1 still inside the range
    first_even = port_min + port_min % 2
    if port_min < 0 or port_max > 65535 or (port_min and first_even + 1 > port_max):
        raise ValueError(
            "HOLDLINE_RTP_PORT_MIN/HOLDLINE_RTP_PORT_MAX must contain an even port"
            f" and the port after it, got {port_min}-{port_max}"
        )

    frame_size = _int(env, "HOLDLINE_FRAME_SIZE", 320)
    if frame_size <= 0:
        raise ValueError(f"HOLDLINE_FRAME_SIZE must be positive, got {frame_size}")

    log_level = env.get("HOLDLINE_LOG_LEVEL", "INFO").strip().upper() or "INFO"

    return Settings(
        sip_host=env.get("HOLDLINE_SIP_HOST", "0.0.0.0"),
        sip_port=_int(env, "HOLDLINE_SIP_PORT", 5060),
        server_ip=env.get("HOLDLINE_SERVER_IP") or None,
        rtp_port_min=port_min,
        rtp_port_max=port_max,
        rtp_strict_ports=_bool(env, "HOLDLINE_RTP_STRICT_PORTS", False),
        audio=env.get("HOLDLINE_AUDIO") or "chimes",
        frame_size=frame_size,
        log_level=log_level,
        database_url=env.get("DATABASE_URL") or None,
    )
