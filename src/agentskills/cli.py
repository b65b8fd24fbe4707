from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import Any

from ._version import __version__
from .client import AgentSkillsError
from .config import Config, global_skills_dir, load_config, project_skills_dir, read_declared_skills
from .installer import InstallAllResult, InstallFailure, InstallSuccess, SkillInstaller
from .lockfile import LockFileManager, get_allowed_skills
from .manifest import SKILL_FILENAME, load_manifest, validate_manifest
from .providers import default_providers, make_http_client
from .registry import SkillRegistry


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


def _truncate(text: str, width: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="agentskills",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Install Agent Skills declared in package.json and inspect installed skills.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              AGENTSKILLS_CONFIG_PATH, AGENTSKILLS_TIMEOUT_S, AGENTSKILLS_NPM_REGISTRY,
              GITHUB_TOKEN, GITLAB_TOKEN
            """
        ),
    )
    p.add_argument("--version", action="version", version=f"agentskills {__version__}")
    p.add_argument("--config", help="Config file path (overrides AGENTSKILLS_CONFIG_PATH)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log debug output to stderr")

    sub = p.add_subparsers(dest="cmd", required=True)

    install = sub.add_parser("install", aliases=["i"], help="Install all skills declared in package.json")
    install.add_argument("--project-dir", default=".", help="Project directory (default: current directory)")
    install.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", aliases=["ls"], help="List installed skills (local, then global)")
    ls.add_argument("--project-dir", default=".", help="Project directory (default: current directory)")
    ls.add_argument("--no-global", action="store_true", help="Ignore the global skills directory")
    ls.add_argument("--json", action="store_true", help="Output JSON")

    validate = sub.add_parser("validate", help="Validate a skill directory or SKILL.md file")
    validate.add_argument("path", help="Skill directory or path to SKILL.md")
    validate.add_argument("--json", action="store_true", help="Output JSON")

    return p


async def _install_all(cfg: Config, skills_dir: Path, declared: dict[str, str]) -> InstallAllResult:
    async with make_http_client(cfg) as http:
        installer = SkillInstaller(skills_dir, providers=default_providers(cfg, http))
        return await installer.install_all(declared)


def cmd_install(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    project_dir = Path(args.project_dir).expanduser().resolve()
    declared = read_declared_skills(project_dir)
    if not declared:
        print("No skills declared (add an \"agentskills\" field to package.json).")
        return 0

    skills_dir = project_skills_dir(project_dir)
    result = asyncio.run(_install_all(cfg, skills_dir, declared))
    lock_path = LockFileManager(skills_dir).generate_lock_file(result.successful())

    rows: list[dict[str, Any]] = []
    for name in sorted(result.results):
        r = result.results[name]
        if isinstance(r, InstallSuccess):
            rows.append(
                {
                    "name": name,
                    "spec": r.spec,
                    "success": True,
                    "skill": r.manifest.name,
                    "resolved_version": r.resolved_version,
                    "integrity": r.integrity,
                    "install_path": str(r.install_path),
                }
            )
        elif isinstance(r, InstallFailure):
            rows.append(
                {"name": name, "spec": r.spec, "success": False, "code": r.error.code, "message": r.error.message}
            )

    if args.json:
        print(json.dumps({"skills_dir": str(skills_dir), "lock": str(lock_path), "results": rows}, indent=2, sort_keys=True))
        return 0 if result.success else 1

    print(f"skills_dir: {skills_dir}")
    print(f"lock: {lock_path}")
    for row in rows:
        if row["success"]:
            alias = f" (skill: {row['skill']})" if row["skill"] != row["name"] else ""
            print(f"installed: {row['name']}{alias} {row['resolved_version']}")
        else:
            print(f"failed: {row['name']} [{row['code']}] {row['message']}")
    print(f"{len(result.installed)} installed, {len(result.failed)} failed")
    return 0 if result.success else 1


def cmd_list(args: argparse.Namespace) -> int:
    cfg = load_config(args.config)
    project_dir = Path(args.project_dir).expanduser().resolve()
    local_dir = project_skills_dir(project_dir)
    dirs = [local_dir] if local_dir.is_dir() else []
    if not args.no_global:
        global_dir = global_skills_dir(cfg)
        if global_dir.is_dir():
            dirs.append(global_dir)
    if not dirs:
        print(f"error: Skills directory not found: {local_dir}", file=sys.stderr)
        print("Run 'agentskills install' to install configured skills.", file=sys.stderr)
        return 1

    registry = SkillRegistry()
    registry.load_skills_from_multiple(dirs, get_allowed_skills(project_dir))
    state = registry.get_state()

    if args.json:
        payload = {
            "skills": [
                {
                    "name": m.install_name,
                    "skill": m.name,
                    "description": m.description,
                    "source": str(state.provenance[m.install_name]),
                }
                for m in registry.get_all_metadata()
            ],
            "collisions": [
                {"name": c.name, "kept": str(c.kept), "skipped": str(c.skipped)} for c in state.collisions
            ],
            "warnings": list(state.warnings),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    rows = [["NAME", "SKILL", "SOURCE", "DESCRIPTION"]]
    for m in registry.get_all_metadata():
        source = "local" if state.provenance[m.install_name] == local_dir else str(state.provenance[m.install_name])
        rows.append([m.install_name, m.name, source, _truncate(m.description)])
    _print_table(rows)
    for c in state.collisions:
        print(f"warning: {c.name} in {c.skipped} is shadowed by {c.kept}", file=sys.stderr)
    for warning in state.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    path = Path(args.path).expanduser().resolve()
    if path.is_file() and path.name == SKILL_FILENAME:
        path = path.parent

    manifest, _, body = load_manifest(path)
    warnings = validate_manifest(manifest, body=body, dir_name=path.name)

    if args.json:
        payload = {"valid": True, "name": manifest.name, "description": manifest.description, "warnings": warnings}
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    print(f"valid: {manifest.name}")
    for warning in warnings:
        print(f"warning: {warning}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    try:
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "validate":
            return cmd_validate(args)
        raise AssertionError("unreachable")
    except (AgentSkillsError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
