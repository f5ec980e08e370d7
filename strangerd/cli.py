from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS
import tomlkit

from .config import PairingRuntimeConfig, apply_config_data, load_toml
from .constants import MATCH_POLICIES
from .logging_config import configure_logging
from .paths import default_config_path, default_identity_path, ensure_private_dir
from .service import PairingService


def _default_config_document(identity_path: str) -> tomlkit.TOMLDocument:
    d = PairingRuntimeConfig()

    doc = tomlkit.document()
    doc.add(tomlkit.comment("strangerd configuration (TOML)"))
    doc.add(tomlkit.comment(""))
    doc.add(tomlkit.comment("This file was created on first run."))
    doc.add(tomlkit.comment("Edit it, then start strangerd again."))
    doc.add(tomlkit.nl())

    pairing = tomlkit.table()
    pairing.add(tomlkit.comment("Optional: Reticulum configuration directory."))
    pairing.add(tomlkit.comment("If left empty, Reticulum picks its default (usually ~/.reticulum)."))
    pairing.add("configdir", "")
    pairing.add(tomlkit.comment("Where strangerd keeps its Reticulum identity."))
    pairing.add("identity_path", identity_path)
    pairing.add("dest_name", d.dest_name)
    pairing.add("hub_name", d.hub_name)
    pairing.add(tomlkit.nl())

    pairing.add(tomlkit.comment("Announcing. announce_period_s > 0 re-announces periodically."))
    pairing.add("announce_on_start", d.announce_on_start)
    pairing.add("announce_period_s", d.announce_period_s)
    pairing.add(tomlkit.nl())

    pairing.add(tomlkit.comment('Matching: "fifo" pairs with the longest waiting user,'))
    pairing.add(tomlkit.comment('"interest" prefers the longest waiting user with a shared interest.'))
    pairing.add(tomlkit.comment("interest_fallback: when nobody shares an interest, pair with the"))
    pairing.add(tomlkit.comment("longest waiting user anyway instead of waiting."))
    pairing.add("match_policy", d.match_policy)
    pairing.add("interest_fallback", d.interest_fallback)
    pairing.add("max_interests", d.max_interests)
    pairing.add("interest_max_chars", d.interest_max_chars)
    pairing.add(tomlkit.comment("Put a user straight back into matching when their partner leaves."))
    pairing.add("requeue_on_partner_left", d.requeue_on_partner_left)
    pairing.add(tomlkit.nl())

    pairing.add(tomlkit.comment("Limits."))
    pairing.add("user_id_max_chars", d.user_id_max_chars)
    pairing.add("max_msg_chars", d.max_msg_chars)
    pairing.add("rate_limit_msgs_per_minute", d.rate_limit_msgs_per_minute)
    pairing.add(tomlkit.nl())

    pairing.add(tomlkit.comment("Presence (online/waiting/active chat counts) pushed to every user."))
    pairing.add(tomlkit.comment("presence_interval_s > 0 also re-broadcasts periodically."))
    pairing.add("presence_broadcast", d.presence_broadcast)
    pairing.add("presence_interval_s", d.presence_interval_s)
    pairing.add(tomlkit.nl())

    pairing.add(tomlkit.comment("Hub-initiated liveness checks (0 disables)."))
    pairing.add("ping_interval_s", d.ping_interval_s)
    pairing.add("ping_timeout_s", d.ping_timeout_s)
    pairing.add(tomlkit.nl())

    pairing.add(tomlkit.comment("Serve /stats and /health as Reticulum requests."))
    pairing.add("enable_stats_requests", d.enable_stats_requests)
    doc.add("pairing", pairing)

    access = tomlkit.table()
    access.add(tomlkit.comment("Reticulum identity hashes (hex). Both empty = everyone may connect."))
    access.add(tomlkit.comment("With allowed_identities set, links must identify and be listed."))
    access.add("allowed_identities", tomlkit.array())
    access.add("denied_identities", tomlkit.array())
    doc.add("access", access)

    logging_table = tomlkit.table()
    logging_table.add("level", d.log_level)
    logging_table.add(tomlkit.comment("Log level for Reticulum's own Python logger."))
    logging_table.add("rns_level", d.log_rns_level)
    logging_table.add("console", d.log_console)
    logging_table.add(tomlkit.comment("Optional log file path (leave empty to disable)."))
    logging_table.add("file", "")
    logging_table.add("format", d.log_format)
    logging_table.add("datefmt", "")
    doc.add("logging", logging_table)

    return doc


def _ensure_first_run_files(config_path: str, identity_path: str) -> list[str]:
    """Create whatever of the config and identity is missing; returns what was made."""
    created: list[str] = []

    for path, kind in ((config_path, "config"), (identity_path, "identity")):
        if os.path.exists(path):
            continue
        parent = os.path.dirname(path)
        if parent:
            ensure_private_dir(Path(parent))

        if kind == "config":
            Path(path).write_text(
                tomlkit.dumps(_default_config_document(identity_path)), encoding="utf-8"
            )
        else:
            RNS.Identity().to_file(path)
            try:
                os.chmod(path, 0o600)
            except OSError:
                pass
        created.append(path)

    return created


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="strangerd", description="Run an anonymous one-on-one chat pairing daemon"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to the daemon identity file (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: strangerd.pairing)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )

    p.add_argument(
        "--match-policy",
        choices=MATCH_POLICIES,
        default=None,
        help="Partner selection policy",
    )
    p.add_argument(
        "--no-interest-fallback",
        action="store_true",
        help="Keep waiting rather than pair users without a shared interest",
    )
    p.add_argument(
        "--requeue-on-partner-left",
        action="store_true",
        help="Match users again as soon as their partner leaves",
    )

    p.add_argument(
        "--max-msg-chars", type=int, default=None, help="Maximum chat message length"
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link packet rate limit",
    )

    p.add_argument(
        "--presence-interval",
        type=float,
        default=None,
        help="Periodic presence broadcast interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


# (argparse dest, config field, cast) for plain value overrides.
_VALUE_FLAGS: tuple[tuple[str, str, type], ...] = (
    ("configdir", "configdir", str),
    ("dest_name", "dest_name", str),
    ("announce_period", "announce_period_s", float),
    ("match_policy", "match_policy", str),
    ("max_msg_chars", "max_msg_chars", int),
    ("rate_limit_msgs_per_minute", "rate_limit_msgs_per_minute", int),
    ("presence_interval", "presence_interval_s", float),
    ("ping_interval", "ping_interval_s", float),
    ("ping_timeout", "ping_timeout_s", float),
    ("log_level", "log_level", str),
)

# (argparse dest, config field, value when the switch is given).
_SWITCH_FLAGS: tuple[tuple[str, str, bool], ...] = (
    ("no_announce", "announce_on_start", False),
    ("no_interest_fallback", "interest_fallback", False),
    ("requeue_on_partner_left", "requeue_on_partner_left", True),
)


def build_config(args: argparse.Namespace) -> PairingRuntimeConfig:
    """Defaults, then the TOML file if present, then command-line flags."""
    cfg = PairingRuntimeConfig(
        config_path=str(args.config),
        configdir=args.configdir,
        identity_path=str(args.identity),
    )

    if args.config and os.path.exists(args.config):
        cfg = apply_config_data(cfg, load_toml(str(args.config)))

    overrides: dict[str, object] = {}
    for dest, field_name, cast in _VALUE_FLAGS:
        value = getattr(args, dest)
        if value is not None:
            overrides[field_name] = cast(value)
    for dest, field_name, value in _SWITCH_FLAGS:
        if getattr(args, dest):
            overrides[field_name] = value
    if args.log_file is not None:
        overrides["log_file"] = str(args.log_file) or None

    return replace(cfg, **overrides) if overrides else cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    created = _ensure_first_run_files(str(args.config), str(args.identity))
    if created:
        listing = "\n".join(f"- {path}" for path in created)
        print(
            f"strangerd created:\n{listing}\n\n"
            "Review the configuration, then start strangerd again.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = PairingService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
