from __future__ import annotations

from dataclasses import asdict, dataclass, replace

from .constants import MATCH_POLICIES, MATCH_POLICY_INTEREST


@dataclass(frozen=True)
class PairingRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "strangerd.pairing"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "strangerd"
    match_policy: str = MATCH_POLICY_INTEREST
    interest_fallback: bool = True
    max_interests: int = 10
    interest_max_chars: int = 32
    requeue_on_partner_left: bool = False
    user_id_max_chars: int = 64
    max_msg_chars: int = 2000
    rate_limit_msgs_per_minute: int = 240
    presence_broadcast: bool = True
    presence_interval_s: float = 30.0
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    enable_stats_requests: bool = True
    allowed_identities: tuple[str, ...] = ()
    denied_identities: tuple[str, ...] = ()
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(
    base: PairingRuntimeConfig, data: dict
) -> PairingRuntimeConfig:
    """Overlay a parsed TOML document onto ``base``.

    Top-level keys, the ``[pairing]`` and ``[access]`` tables and the
    ``[logging]`` table (with its short key names) are all accepted.
    Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        return base

    for table_name in ("pairing", "access"):
        table = data.get(table_name)
        if isinstance(table, dict):
            data = {**data, **table}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped = {
            cfg_key: log_table.get(toml_key)
            for toml_key, cfg_key in _LOGGING_KEYS.items()
            if toml_key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where to reload from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for list_key in ("allowed_identities", "denied_identities"):
        if list_key in updates and isinstance(updates[list_key], list):
            updates[list_key] = tuple(str(x) for x in updates[list_key])

    for opt_key in ("configdir", "log_file", "log_datefmt"):
        if opt_key in updates and updates[opt_key] == "":
            updates[opt_key] = None

    if "match_policy" in updates:
        policy = str(updates["match_policy"]).strip().lower()
        if policy not in MATCH_POLICIES:
            raise ValueError(
                f"match_policy must be one of {', '.join(MATCH_POLICIES)}: {policy!r}"
            )
        updates["match_policy"] = policy

    return replace(base, **updates) if updates else base
