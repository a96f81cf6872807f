from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict
from typing import Any

from ._version import __version__
from .config import Config, config_path, load_config, resolve_paths, set_config_value
from .errors import SkillHubError
from .hub import SkillHub
from .models import InstallMode, record_to_dict


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def _parse_mode(value: str) -> InstallMode:
    try:
        return InstallMode.parse(value, strict=True)
    except SkillHubError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _make_hub(args: argparse.Namespace) -> SkillHub:
    cfg = load_config(args.config)
    paths = resolve_paths(cfg, args.state)
    return SkillHub.from_config(cfg, paths)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillhub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Stage skills once and deploy them into every product that loads skills.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLHUB_HOME, SKILLHUB_CONFIG_PATH
            """
        ),
    )
    p.add_argument("--state", help="State directory (overrides config/env)")
    p.add_argument("--config", help="Config file path (overrides SKILLHUB_CONFIG_PATH)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    p.add_argument("--version", action="version", version=f"skillhub {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("products", help="List known products")

    detect = sub.add_parser("detect", aliases=["doctor"], help="Check which products are installed")
    detect.add_argument("--json", action="store_true", help="Output JSON")

    sub.add_parser("skills", help="List registered skills")

    add = sub.add_parser("add", help="Register a skill from a path, manifest URL or git remote")
    add.add_argument("source")

    stage = sub.add_parser("stage", help="Copy a skill into the staging area")
    stage.add_argument("target", help="Registered skill id, manifest path or other source")

    unstage = sub.add_parser("unstage", help="Delete a skill's staged files")
    unstage.add_argument("skill_id")

    mode_help = "auto|symlink|copy|configPatch (default: auto)"

    deploy = sub.add_parser("deploy", aliases=["install"], help="Prepare a product to receive a skill")
    deploy.add_argument("skill_id")
    deploy.add_argument("product_id")
    deploy.add_argument("--mode", type=_parse_mode, default=InstallMode.AUTO, help=mode_help)

    apply = sub.add_parser("apply", aliases=["setup"], help="Stage, deploy and enable in one step")
    apply.add_argument("target", help="Registered skill id, manifest path or other source")
    apply.add_argument("product_id")
    apply.add_argument("--mode", type=_parse_mode, default=InstallMode.AUTO, help=mode_help)

    for name, help_text in (
        ("uninstall", "Disable a skill and forget its deployment to a product"),
        ("enable", "Place a deployed skill where the product loads it"),
        ("disable", "Remove a skill from where the product loads it"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("skill_id")
        cmd.add_argument("product_id")

    remove = sub.add_parser("remove", help="Forget a skill")
    remove.add_argument("skill_id")
    remove.add_argument("--purge", action="store_true", help="Also delete the staged files")

    status = sub.add_parser("status", help="Show per-product status of skills")
    status.add_argument("skill_id", nargs="?", default=None)
    status.add_argument("--json", action="store_true", help="Output JSON")

    sub.add_parser("reconcile", help="Sync recorded enabled flags with product directories")

    updates = sub.add_parser("check-updates", help="Check git-sourced skills for newer commits")
    updates.add_argument("--json", action="store_true", help="Output JSON")

    cfg_path = sub.add_parser("config-path", help="Set or clear a product's settings file location")
    cfg_path.add_argument("product_id")
    cfg_path.add_argument("path", nargs="?", default=None)
    cfg_path.add_argument("--clear", action="store_true", help="Remove the override")

    sub.add_parser("gc", help="Recover or delete leftovers from interrupted staging")

    cfg = sub.add_parser("config", help="Inspect or change local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show effective config")
    cfg_set = cfg_sub.add_parser("set", help="Set one config key (JSON value; state_dir is taken literally)")
    cfg_set.add_argument("key")
    cfg_set.add_argument("value")

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path(args.config)))
        return 0

    if args.subcmd == "show":
        cfg: Config = load_config(args.config)
        d = asdict(cfg)
        d["resolved_state_dir"] = str(resolve_paths(cfg, args.state).root)
        _print_json(d)
        return 0

    if args.subcmd == "set":
        set_config_value(args.key, args.value, args.config)
        print(f"Set {args.key} in {config_path(args.config)}")
        return 0

    raise AssertionError("unreachable")


def cmd_products(hub: SkillHub, args: argparse.Namespace) -> int:
    rows = [["ID", "NAME", "MODES", "SKILLS_DIR"]]
    for adapter in hub.registry.all():
        modes = ",".join(m.value for m in adapter.supported_install_modes)
        rows.append([adapter.id, adapter.name, modes, str(adapter.skills_directory())])
    _print_table(rows)
    return 0


def cmd_detect(hub: SkillHub, args: argparse.Namespace) -> int:
    results = hub.detect_products()
    if args.json:
        _print_json(
            [{"id": a.id, "name": a.name, "detected": r.is_detected, "reason": r.reason} for a, r in results]
        )
        return 0
    rows = [["ID", "DETECTED", "REASON"]]
    for adapter, result in results:
        rows.append([adapter.id, "yes" if result.is_detected else "no", result.reason])
    _print_table(rows)
    return 0


def cmd_skills(hub: SkillHub, args: argparse.Namespace) -> int:
    records = hub.skills()
    if not records:
        print("No skills registered.")
        return 0
    rows = [["ID", "VERSION", "NAME", "DEPLOYED", "ENABLED", "UPDATE"]]
    for r in records:
        rows.append(
            [
                r.id,
                r.manifest.version,
                r.manifest.name,
                ",".join(sorted(r.deployed_products)) or "-",
                ",".join(sorted(r.enabled_products)) or "-",
                "yes" if r.has_update else "",
            ]
        )
    _print_table(rows)
    return 0


def cmd_add(hub: SkillHub, args: argparse.Namespace) -> int:
    record = hub.add(args.source)
    print(f"Added skill {record.id} from {args.source}")
    return 0


def cmd_stage(hub: SkillHub, args: argparse.Namespace) -> int:
    path = hub.stage(args.target)
    print(f"Staged {path.name} at {path}")
    return 0


def cmd_unstage(hub: SkillHub, args: argparse.Namespace) -> int:
    if hub.unstage(args.skill_id):
        print(f"Unstaged {args.skill_id}")
    else:
        print(f"No staged directory found for {args.skill_id}")
    return 0


def cmd_deploy(hub: SkillHub, args: argparse.Namespace) -> int:
    mode = hub.deploy(args.skill_id, args.product_id, args.mode)
    print(f"Deployed {args.skill_id} to {args.product_id} (mode: {mode.value}). Next: skillhub enable {args.skill_id} {args.product_id}")
    return 0


def cmd_apply(hub: SkillHub, args: argparse.Namespace) -> int:
    result = hub.apply(args.target, args.product_id, args.mode, progress=print)
    print(
        f"Applied {result.skill_id} to {result.product_id}. "
        f"requestedMode={result.requested_mode.value} chosenMode={result.mode.value} stagedPath={result.staged_path}"
    )
    return 0


def cmd_uninstall(hub: SkillHub, args: argparse.Namespace) -> int:
    hub.uninstall(args.skill_id, args.product_id)
    print(f"Uninstalled {args.skill_id} from {args.product_id}")
    return 0


def cmd_enable(hub: SkillHub, args: argparse.Namespace) -> int:
    mode = hub.enable(args.skill_id, args.product_id)
    print(f"Enabled {args.skill_id} for {args.product_id} (mode: {mode.value})")
    return 0


def cmd_disable(hub: SkillHub, args: argparse.Namespace) -> int:
    hub.disable(args.skill_id, args.product_id)
    print(f"Disabled {args.skill_id} for {args.product_id}")
    return 0


def cmd_remove(hub: SkillHub, args: argparse.Namespace) -> int:
    hub.remove(args.skill_id, purge=args.purge)
    print(f"Removed skill record {args.skill_id}{' and purged staged files' if args.purge else ''}")
    return 0


def cmd_status(hub: SkillHub, args: argparse.Namespace) -> int:
    statuses = hub.status(args.skill_id)
    if args.json:
        out = []
        for s in statuses:
            item = record_to_dict(s.record)
            item["staged"] = s.staged
            item["products"] = {
                b.product_id: {
                    "deployed": b.deployed,
                    "enabled": b.enabled,
                    "mode": b.mode.value if b.mode else None,
                    "present": b.product.is_enabled,
                    "detail": b.product.detail,
                }
                for b in s.bindings
            }
            out.append(item)
        _print_json(out)
        return 0

    if not statuses:
        print("No matching skill status found.")
        return 0
    for s in statuses:
        r = s.record
        print(f"{r.id} {r.manifest.version}  staged={'yes' if s.staged else 'no'}  update={'yes' if r.has_update else 'no'}")
        for b in s.bindings:
            mode = b.mode.value if b.mode else "-"
            print(f"  {b.product_id}: deployed={b.deployed} enabled={b.enabled} mode={mode} :: {b.product.detail}")
    return 0


def cmd_reconcile(hub: SkillHub, args: argparse.Namespace) -> int:
    fixes = hub.reconcile()
    if not fixes:
        print("No drift found.")
        return 0
    for f in fixes:
        print(f"{f.skill_id}/{f.product_id}: enabled -> {f.enabled} ({f.detail})")
    return 0


def cmd_check_updates(hub: SkillHub, args: argparse.Namespace) -> int:
    results = hub.check_updates()
    if args.json:
        out = []
        for r in results:
            d = asdict(r)
            d["status"] = r.status.value
            out.append(d)
        _print_json(out)
        return 0
    if not results:
        print("No deployed skills to check.")
        return 0
    rows = [["ID", "STATUS", "BRANCH", "DETAIL"]]
    for r in results:
        rows.append([r.skill_id, r.status.value, r.branch or "-", r.detail])
    _print_table(rows)
    return 0


def cmd_config_path(hub: SkillHub, args: argparse.Namespace) -> int:
    if args.clear or not args.path:
        hub.set_product_config_path(args.product_id, None)
        print(f"Cleared config path override for {args.product_id}")
        return 0
    hub.set_product_config_path(args.product_id, args.path)
    print(f"Config path for {args.product_id}: {args.path}")
    return 0


def cmd_gc(hub: SkillHub, args: argparse.Namespace) -> int:
    removed = hub.collect_garbage()
    for p in removed:
        print(f"removed: {p}")
    print(f"Removed {len(removed)} leftover(s).")
    return 0


_HUB_COMMANDS = {
    "products": cmd_products,
    "detect": cmd_detect,
    "doctor": cmd_detect,
    "skills": cmd_skills,
    "add": cmd_add,
    "stage": cmd_stage,
    "unstage": cmd_unstage,
    "deploy": cmd_deploy,
    "install": cmd_deploy,
    "apply": cmd_apply,
    "setup": cmd_apply,
    "uninstall": cmd_uninstall,
    "enable": cmd_enable,
    "disable": cmd_disable,
    "remove": cmd_remove,
    "status": cmd_status,
    "reconcile": cmd_reconcile,
    "check-updates": cmd_check_updates,
    "config-path": cmd_config_path,
    "gc": cmd_gc,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        if args.cmd == "config":
            return cmd_config(args)
        handler = _HUB_COMMANDS.get(args.cmd)
        if handler is None:
            raise AssertionError("unreachable")
        with _make_hub(args) as hub:
            return handler(hub, args)
    except SkillHubError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
