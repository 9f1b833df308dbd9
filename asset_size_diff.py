#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
asset-size-diff — CI helper that reports how a pull request changes built asset sizes.

Features:
- Measures raw, gzip and brotli sizes of built JS/CSS assets (dist/assets/**.js, **.css)
- Normalises fingerprinted/chunked filenames so two builds can be compared
- Diffs a base build against a pull-request build, per file and per metric
- Markdown report (grew / shrank / unchanged tables) ready for a PR comment
- Installs dependencies with the package manager matching the lockfile
- Fetches pull-request metadata and posts the report via the GitHub API

Exit codes:
  0 = report produced
  2 = configuration/runtime error

MIT License
"""

import argparse
import fnmatch
import gzip
import json
import os
import re
import shlex
import subprocess
import sys
from typing import Dict, List, Optional, Tuple

import brotli
import httpx

# -------------------------------
# Constants
# -------------------------------
PROG = "asset-size-diff"

DEC_KB = 1000
DEC_MB = 1000 * 1000
DEC_GB = 1000 * 1000 * 1000

SIZE_TYPES = ("raw", "gzip", "brotli")

DEFAULT_PATTERNS = ["dist/assets/**.js", "dist/assets/**.css"]
DEFAULT_BUILD_COMMAND = "yarn build-for-action"
DEFAULT_API_URL = "https://api.github.com"

SizeRecord = Dict[str, int]
SizeMapping = Dict[str, SizeRecord]

# -------------------------------
# Diagnostics
# -------------------------------
def log(msg: str) -> None:
    print(f"[{PROG}] {msg}", file=sys.stderr)

def debug(msg: str) -> None:
    if os.getenv("ASD_DEBUG"):
        log(msg)

# -------------------------------
# Process helpers
# -------------------------------
def run(cmd: List[str], cwd: Optional[str] = None) -> Tuple[int, str, str]:
    proc = subprocess.Popen(cmd, cwd=cwd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    out, err = proc.communicate()
    return proc.returncode, out, err

def run_checked(cmd: List[str], cwd: Optional[str] = None) -> str:
    log(f"$ {' '.join(cmd)}")
    code, out, err = run(cmd, cwd=cwd)
    if code != 0:
        raise RuntimeError(f"{' '.join(cmd)!r} exited with {code}: {err.strip() or out.strip()}")
    return out

# -------------------------------
# Byte formatting
# -------------------------------
def human_bytes(n: int, signed: bool = False) -> str:
    if n < 0:
        sign = "-"
    elif signed and n > 0:
        sign = "+"
    else:
        sign = ""
    n_abs = abs(n)
    if n_abs >= DEC_GB: return f"{sign}{n_abs/DEC_GB:.2f} GB"
    if n_abs >= DEC_MB: return f"{sign}{n_abs/DEC_MB:.2f} MB"
    if n_abs >= DEC_KB: return f"{sign}{n_abs/DEC_KB:.2f} KB"
    return f"{sign}{n_abs} B"

# -------------------------------
# Fingerprint normalisation
# -------------------------------
# Separators are unescaped: any single character may sit between the name, the
# 20-character hash and the extension.
_CHUNK_RE = re.compile(r'(chunk.)?([\w-]+)(.\w{20}).js', re.ASCII)
_ASSET_RE = re.compile(r'dist/assets/([\w-]+)(.\w{20})?(.\w+)', re.ASCII)

def chunk_key(path: str) -> Optional[str]:
    """
    Every `[chunk.]<name>.<hash>.js` segment in the path contributes its name;
    names are merged into a single `chunk.<a>+<b>.js` key.
    """
    names = [m.group(2) for m in _CHUNK_RE.finditer(path)]
    if not names:
        return None
    return f"chunk.{'+'.join(names)}.js"

def asset_key(path: str) -> Optional[str]:
    m = _ASSET_RE.search(path)
    if not m:
        return None
    name, _, ext = m.groups()
    return f"{name}{ext}"

# Evaluated in order; the first matcher that returns a key wins.
NORMALISERS = (
    ("chunk", chunk_key),
    ("asset", asset_key),
)

def normalise_fingerprint(sizes: SizeMapping) -> SizeMapping:
    """
    Re-key a path -> sizes mapping by hash-independent names.

    Paths matching no known pattern are left out. When several paths collapse onto
    the same key the one seen last wins.
    """
    out: SizeMapping = {}
    for path, record in sizes.items():
        for kind, matcher in NORMALISERS:
            key = matcher(path)
            if key is not None:
                out[key] = record
                break
            debug(f"{path} does not match the {kind} file pattern")
        else:
            log(f"Ignoring file {path} as it does not match a known asset file pattern")
    return out

# -------------------------------
# Diffing
# -------------------------------
def diff_sizes(base: SizeMapping, head: SizeMapping) -> Dict[str, Dict]:
    """
    Per-key size deltas for every key of `head`.

    New keys carry head's sizes as-is. Keys in both carry `head - base` plus an
    `absolute` record of head's sizes. Keys only in `base` (deleted files) are not
    reported.
    """
    out: Dict[str, Dict] = {}
    for key, new in head.items():
        old = base.get(key)
        if old is None:
            out[key] = {t: new[t] for t in SIZE_TYPES}
        else:
            record: Dict = {t: new[t] - old[t] for t in SIZE_TYPES}
            record["absolute"] = {t: new[t] for t in SIZE_TYPES}
            out[key] = record
    return out

# -------------------------------
# Markdown report
# -------------------------------
SECTIONS = (
    ("bigger", "Files that got Bigger 🚨:"),
    ("smaller", "Files that got Smaller 🎉:"),
    ("same", "Files that stayed the same size 🤷:"),
)

def partition_diff(diff: Dict[str, Dict]) -> Dict[str, List[Tuple[str, Dict]]]:
    parts: Dict[str, List[Tuple[str, Dict]]] = {"bigger": [], "smaller": [], "same": []}
    for key, record in diff.items():
        if record["raw"] > 0:
            parts["bigger"].append((key, record))
        elif record["raw"] < 0:
            parts["smaller"].append((key, record))
        else:
            parts["same"].append((key, record))
    return parts

def format_cell(record: Dict, size_type: str) -> str:
    cell = human_bytes(record[size_type], signed=True)
    absolute = record.get("absolute")
    if absolute:
        cell += f" ({human_bytes(absolute[size_type])})"
    return cell

def report_table(rows: List[Tuple[str, Dict]]) -> str:
    lines: List[str] = []
    lines.append("File | raw | gzip | brotli")
    lines.append("--- | --- | --- | ---")
    for key, record in rows:
        lines.append("|".join([key] + [format_cell(record, t) for t in SIZE_TYPES]))
    return "\n".join(lines) + "\n"

def build_output_text(diff: Dict[str, Dict]) -> str:
    parts = partition_diff(diff)
    sections: List[str] = []
    for name, heading in SECTIONS:
        if parts[name]:
            sections.append(f"{heading}\n\n{report_table(parts[name])}")
    return "\n".join(sections).strip()

# -------------------------------
# Asset measurement
# -------------------------------
def measure_file(path: str) -> SizeRecord:
    with open(path, "rb") as f:
        data = f.read()
    return {
        "raw": len(data),
        "gzip": len(gzip.compress(data, compresslevel=9)),
        "brotli": len(brotli.compress(data, quality=11, lgwin=24)),
    }

def _match_parts(parts: List[str], pats: List[str]) -> bool:
    if not pats:
        return not parts
    if pats[0] == "**":
        return any(_match_parts(parts[i:], pats[1:]) for i in range(len(parts) + 1))
    return bool(parts) and fnmatch.fnmatchcase(parts[0], pats[0]) and _match_parts(parts[1:], pats[1:])

def match_glob(rel: str, pattern: str) -> bool:
    """
    Segment-wise glob match: `*` never crosses `/`, a `**` inside a segment acts
    like `*`, and only a whole `**` segment spans directories.
    """
    return _match_parts(rel.split("/"), pattern.split("/"))

def collect_asset_sizes(root: str, patterns: List[str]) -> SizeMapping:
    sizes: SizeMapping = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in (".git", "node_modules")]
        for name in filenames:
            full = os.path.join(dirpath, name)
            rel = os.path.relpath(full, root).replace(os.sep, "/")
            if any(match_glob(rel, pat) for pat in patterns):
                sizes[rel] = measure_file(full)
    return dict(sorted(sizes.items()))

# -------------------------------
# Install / build
# -------------------------------
def install_command(cwd: str, npm_version: Optional[str] = None) -> List[str]:
    if os.path.isfile(os.path.join(cwd, "yarn.lock")):
        return ["yarn", "--frozen-lockfile"]

    lock_path = os.path.join(cwd, "package-lock.json")
    if os.path.isfile(lock_path):
        with open(lock_path, "r", encoding="utf-8") as f:
            package_lock = json.load(f)
        if package_lock.get("lockfileVersion") == 2:
            if npm_version is None:
                npm_version = run_checked(["npm", "-v"], cwd=cwd)
            # lockfile v2 needs npm 7
            if not npm_version.strip().startswith("7"):
                return ["npx", "npm@7", "ci"]
        return ["npm", "ci"]

    log("No package-lock.json or yarn.lock detected! We strongly recommend committing one")
    return ["npm", "install"]

def install_dependencies(cwd: str) -> None:
    run_checked(install_command(cwd), cwd=cwd)

def run_build(command: str, cwd: str) -> None:
    run_checked(shlex.split(command), cwd=cwd)

def build_and_measure(cwd: str, build_command: str, patterns: List[str], install: bool = True) -> SizeMapping:
    if install:
        install_dependencies(cwd)
    run_build(build_command, cwd)
    return collect_asset_sizes(cwd, patterns)

# -------------------------------
# Git
# -------------------------------
def current_revision(cwd: str) -> str:
    code, out, _ = run(["git", "symbolic-ref", "--quiet", "--short", "HEAD"], cwd=cwd)
    if code == 0 and out.strip():
        return out.strip()
    return run_checked(["git", "rev-parse", "HEAD"], cwd=cwd).strip()

def checkout(ref: str, cwd: str) -> None:
    code, _, _ = run(["git", "rev-parse", "--verify", ref], cwd=cwd)
    if code != 0:
        if "/" not in ref:
            raise RuntimeError(f"Cannot resolve ref {ref!r}. Ensure checkout uses fetch-depth: 0.")
        run(["git", "fetch", "--all", "--prune"], cwd=cwd)
    run_checked(["git", "checkout", "--quiet", ref], cwd=cwd)

# -------------------------------
# GitHub
# -------------------------------
def load_event(path: Optional[str]) -> Dict:
    if not path or not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)

def github_client(token: Optional[str], api_url: str = DEFAULT_API_URL) -> httpx.Client:
    headers = {"Accept": "application/vnd.github+json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.Client(base_url=api_url, headers=headers, timeout=30.0)

def _repo_path(pr: Dict) -> str:
    repo = pr["base"]["repo"]
    return f"/repos/{repo['owner']['login']}/{repo['name']}"

def get_pull_request(event: Dict, client: httpx.Client) -> Optional[Dict]:
    pr = event.get("pull_request")
    if not pr:
        log("Could not get pull request number from context, exiting")
        return None
    resp = client.get(f"{_repo_path(pr)}/pulls/{pr['number']}")
    resp.raise_for_status()
    return resp.json()

def post_comment(client: httpx.Client, pull_request: Dict, body: str) -> Dict:
    resp = client.post(f"{_repo_path(pull_request)}/issues/{pull_request['number']}/comments",
                       json={"body": body})
    resp.raise_for_status()
    return resp.json()

# -------------------------------
# CLI
# -------------------------------
def parse_glob_csv(val: Optional[str]) -> List[str]:
    if not val: return []
    return [p.strip() for p in val.split(",") if p.strip()]

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog=PROG, description="Report how a pull request changes built asset sizes")
    sub = p.add_subparsers(dest="command", required=True)

    def add_common(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--cwd", default=os.getenv("ASD_CWD", "."), help="Project directory (default: .)")
        sp.add_argument("--pattern", action="append", default=None,
                        help="Asset glob relative to --cwd; repeatable (env ASD_PATTERNS, default dist/assets/**.js and **.css).")

    m = sub.add_parser("measure", help="Measure assets of an existing build and print JSON sizes.")
    add_common(m)
    m.add_argument("--output", default=None, help="Write JSON here instead of stdout.")

    c = sub.add_parser("compare", help="Diff two JSON size files produced by 'measure'.")
    c.add_argument("base_json", help="Sizes of the base build")
    c.add_argument("head_json", help="Sizes of the pull-request build")
    c.add_argument("--json", action="store_true", help="Also print JSON payload.")

    r = sub.add_parser("report", help="Build and measure base and HEAD, then print the diff report.")
    add_common(r)
    r.add_argument("--ref-base", default=None,
                   help="Base ref (default: origin/<base branch> from the event payload or env GITHUB_BASE_REF, then 'origin/main').")
    r.add_argument("--build-command", default=os.getenv("ASD_BUILD_COMMAND", DEFAULT_BUILD_COMMAND),
                   help=f"Build command (default: {DEFAULT_BUILD_COMMAND!r}).")
    r.add_argument("--skip-install", action="store_true", help="Do not install dependencies before building.")
    r.add_argument("--comment", action="store_true", help="Post the report as a pull-request comment.")
    r.add_argument("--json", action="store_true", help="Also print JSON payload.")
    return p

def resolve_patterns(args: argparse.Namespace) -> List[str]:
    return args.pattern or parse_glob_csv(os.getenv("ASD_PATTERNS")) or list(DEFAULT_PATTERNS)

def load_sizes(path: str) -> SizeMapping:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)

def emit_report(base: SizeMapping, head: SizeMapping, as_json: bool) -> str:
    diff = diff_sizes(normalise_fingerprint(base), normalise_fingerprint(head))
    text = build_output_text(diff)
    print(text or "No asset files to compare.")
    if as_json:
        print("\n===JSON===")
        print(json.dumps({"base": base, "head": head, "diff": diff}, indent=2))
    return text

def cmd_measure(args: argparse.Namespace) -> int:
    sizes = collect_asset_sizes(args.cwd, resolve_patterns(args))
    payload = json.dumps(sizes, indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(payload + "\n")
    else:
        print(payload)
    return 0

def cmd_compare(args: argparse.Namespace) -> int:
    emit_report(load_sizes(args.base_json), load_sizes(args.head_json), args.json)
    return 0

def cmd_report(args: argparse.Namespace) -> int:
    patterns = resolve_patterns(args)
    event = load_event(os.getenv("GITHUB_EVENT_PATH"))

    client: Optional[httpx.Client] = None
    pull_request = None
    if args.comment:
        client = github_client(os.getenv("GITHUB_TOKEN"), os.getenv("GITHUB_API_URL") or DEFAULT_API_URL)
        pull_request = get_pull_request(event, client)

    ref_base = args.ref_base
    if not ref_base:
        event_pr = event.get("pull_request")
        branch = event_pr["base"]["ref"] if event_pr else os.getenv("GITHUB_BASE_REF")
        # Actions checkouts only carry the remote-tracking ref
        ref_base = f"origin/{branch}" if branch else "origin/main"

    try:
        original = current_revision(args.cwd)
        head_sizes = build_and_measure(args.cwd, args.build_command, patterns, install=not args.skip_install)
        checkout(ref_base, args.cwd)
        try:
            base_sizes = build_and_measure(args.cwd, args.build_command, patterns, install=not args.skip_install)
        finally:
            checkout(original, args.cwd)

        text = emit_report(base_sizes, head_sizes, args.json)

        if args.comment:
            if pull_request is None:
                log("No pull request to comment on; skipping comment.")
            else:
                post_comment(client, pull_request, text or "No asset files to compare.")
                log(f"Posted report to pull request #{pull_request['number']}")
    finally:
        if client is not None:
            client.close()
    return 0

COMMANDS = {
    "measure": cmd_measure,
    "compare": cmd_compare,
    "report": cmd_report,
}

# -------------------------------
# Main
# -------------------------------
def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except Exception as e:
        print(f"[{PROG}] ERROR: {e}", file=sys.stderr)
        return 2

if __name__ == "__main__":
    sys.exit(main())
