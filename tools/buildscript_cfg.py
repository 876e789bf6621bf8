#!/usr/bin/env python3
"""Turn a Rust build script's cfg directives into rustc flags.

Runs a prebuilt build-script binary (the probe), keeps the lines it
prints as ``cargo:rustc-cfg=<value>`` and writes them to the output file
as ``--cfg=<value>``, one per line, in the order they were printed.
Every other directive is ignored.

The probe gets the ambient environment with RUSTC and an empty TARGET
layered on top (no explicit target triple).  A probe that cannot be
started or exits non-zero fails the action and no output is written.
"""

import argparse
import os
import signal
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from _env import add_path_args, child_env, has_path_args, resolve_path

CFG_PREFIX = "cargo:rustc-cfg="
FLAG_PREFIX = "--cfg="

# Probe output may contain arbitrary bytes; keep them intact end to end.
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


class BuildscriptError(Exception):
    """Base class; ``stage`` names the pipeline step that failed."""

    stage = "buildscript"


class ProcessError(BuildscriptError):
    stage = "probe"


class SpawnFailed(ProcessError):
    stage = "spawn"

    def __init__(self, probe, cause):
        super().__init__(f"cannot run {probe}: {cause}")
        self.probe = probe
        self.cause = cause


class NonZeroExit(ProcessError):
    stage = "exit status"

    def __init__(self, probe, returncode, stderr=""):
        if returncode < 0:
            how = f"killed by signal {-returncode}"
        else:
            how = f"exited with status {returncode}"
        super().__init__(f"{probe} {how}")
        self.probe = probe
        self.returncode = returncode
        self.stderr = stderr


class Cancelled(ProcessError):
    stage = "cancelled"

    def __init__(self, signum):
        super().__init__(f"received signal {signum}")
        self.signum = signum


class WriteFailed(BuildscriptError):
    stage = "write"

    def __init__(self, path, cause):
        super().__init__(f"cannot write {path}: {cause}")
        self.path = path
        self.cause = cause


@dataclass(frozen=True)
class ProbeInvocation:
    """One run of a probe binary.  No arguments are passed to it."""

    probe: str
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    cwd: Optional[str] = None
    clean: bool = False
    path: Optional[str] = None

    def __post_init__(self):
        # Buck2 hands us paths relative to the project root.
        if os.path.exists(self.probe):
            object.__setattr__(self, "probe", os.path.abspath(self.probe))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))


def probe_env_overrides(rustc="rustc", target="", package_name=None,
                        version=None, features=(), manifest_dir=None,
                        out_dir=None, extra_env=()):
    """Compose the env overrides a probe runs with.

    *extra_env* is a sequence of ``KEY=VALUE`` strings applied last.
    """
    env = {"RUSTC": rustc, "TARGET": target}
    if package_name:
        env["CARGO_PKG_NAME"] = package_name
    if version:
        env["CARGO_PKG_VERSION"] = version
    for feature in features:
        env["CARGO_FEATURE_" + feature.upper().replace("-", "_")] = "1"
    if manifest_dir:
        env["CARGO_MANIFEST_DIR"] = os.path.abspath(manifest_dir)
    if out_dir:
        env["OUT_DIR"] = os.path.abspath(out_dir)
    for entry in extra_env:
        key, _, value = entry.partition("=")
        if key:
            env[key] = value
    return env


def run_probe(invocation):
    """Run the probe to completion and return its stdout as text.

    Probe stderr is passed through to our stderr.  Raises SpawnFailed
    or NonZeroExit; stdout from a failed run is discarded.
    """
    env = child_env(invocation.env, clean=invocation.clean, path=invocation.path)
    try:
        proc = subprocess.Popen(
            [invocation.probe],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            cwd=invocation.cwd,
        )
    except OSError as e:
        raise SpawnFailed(invocation.probe, e) from e

    try:
        stdout, stderr = proc.communicate()
    except BaseException:
        proc.kill()
        proc.wait()
        raise

    stderr = stderr.decode(_ENCODING, errors="replace")
    if stderr:
        sys.stderr.write(stderr)
    if proc.returncode != 0:
        raise NonZeroExit(invocation.probe, proc.returncode, stderr)
    return stdout.decode(_ENCODING, errors=_ERRORS)


def transform(raw_text):
    """Yield ``--cfg=<value>`` for each ``cargo:rustc-cfg=<value>`` line.

    Lines end in LF or CRLF; the last one may be unterminated.  The prefix
    must start the line and is case-sensitive.  The value is passed through
    untouched.  Calling again with the same text yields the same flags.
    """
    for line in raw_text.split("\n"):
        if line.endswith("\r"):
            line = line[:-1]
        if line.startswith(CFG_PREFIX):
            yield FLAG_PREFIX + line[len(CFG_PREFIX):]


def render_flags(flags):
    """Serialize flags one per line, each newline-terminated."""
    return "".join(flag + "\n" for flag in flags)


def write_flags(output_path, flags):
    """Atomically replace *output_path* with the rendered flags.

    Returns False without touching the file when it already holds the
    same bytes.  Raises WriteFailed; the destination is then unchanged.
    """
    output_path = os.path.abspath(output_path)
    parent = os.path.dirname(output_path)
    try:
        content = render_flags(flags).encode(_ENCODING, errors=_ERRORS)
        os.makedirs(parent, exist_ok=True)
        if os.path.isfile(output_path):
            with open(output_path, "rb") as f:
                if f.read() == content:
                    return False

        fd, tmp = tempfile.mkstemp(
            dir=parent, prefix="." + os.path.basename(output_path) + ".",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o644)
            os.replace(tmp, output_path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
    except (OSError, UnicodeEncodeError) as e:
        raise WriteFailed(output_path, e) from e
    return True


def generate(invocation, output_path):
    """Run the probe, filter its output and write the flag file.

    Returns ``(flags, written)``.  Nothing is written if the probe fails.
    """
    flags = list(transform(run_probe(invocation)))
    written = write_flags(output_path, flags)
    return flags, written


def _raise_cancelled(signum, _frame):
    raise Cancelled(signum)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Convert build script cargo:rustc-cfg directives to --cfg flags")
    parser.add_argument("--probe", required=True,
                        help="Prebuilt build script binary to run")
    parser.add_argument("--output", required=True,
                        help="Flag file to write (one --cfg=... per line)")
    parser.add_argument("--rustc", default="rustc",
                        help="Value of RUSTC for the probe (default: rustc)")
    parser.add_argument("--target", default="",
                        help="Value of TARGET for the probe (default: empty)")
    parser.add_argument("--package-name", default=None,
                        help="Value of CARGO_PKG_NAME for the probe")
    parser.add_argument("--version", default=None,
                        help="Value of CARGO_PKG_VERSION for the probe")
    parser.add_argument("--feature", action="append", dest="features", default=[],
                        help="Enabled cargo feature, sets CARGO_FEATURE_<NAME> (repeatable)")
    parser.add_argument("--manifest-dir", default=None,
                        help="Crate directory; sets CARGO_MANIFEST_DIR and the probe's cwd")
    parser.add_argument("--out-dir", default=None,
                        help="Scratch directory for the probe; sets OUT_DIR")
    parser.add_argument("--env", action="append", dest="extra_env", default=[],
                        help="Extra environment variable KEY=VALUE (repeatable)")
    parser.add_argument("--clean-env", action="store_true",
                        help="Start from a whitelisted env instead of the host env")
    add_path_args(parser)
    args = parser.parse_args(argv)

    if args.manifest_dir and not os.path.isdir(args.manifest_dir):
        print(f"error: manifest directory not found: {args.manifest_dir}", file=sys.stderr)
        sys.exit(1)

    if args.out_dir:
        try:
            os.makedirs(args.out_dir, exist_ok=True)
        except OSError as e:
            print(f"error: cannot create out dir {args.out_dir}: {e}", file=sys.stderr)
            sys.exit(1)

    path = None
    if args.clean_env or has_path_args(args):
        path = resolve_path(args, host_path=os.environ.get("PATH", ""),
                            require_mode=args.clean_env)

    overrides = probe_env_overrides(
        rustc=args.rustc,
        target=args.target,
        package_name=args.package_name,
        version=args.version,
        features=args.features,
        manifest_dir=args.manifest_dir,
        out_dir=args.out_dir,
        extra_env=args.extra_env,
    )
    invocation = ProbeInvocation(
        probe=args.probe,
        env=overrides,
        cwd=os.path.abspath(args.manifest_dir) if args.manifest_dir else None,
        clean=args.clean_env,
        path=path,
    )

    old_handler = signal.signal(signal.SIGTERM, _raise_cancelled)
    try:
        flags, written = generate(invocation, args.output)
    except BuildscriptError as e:
        print(f"error: {e.stage}: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("error: cancelled: interrupted", file=sys.stderr)
        sys.exit(130)
    finally:
        signal.signal(signal.SIGTERM, old_handler)

    if written:
        print(f"buildscript-cfg: wrote {len(flags)} cfg flag(s) to {args.output}")
    else:
        print(f"buildscript-cfg: {args.output} unchanged ({len(flags)} cfg flag(s))")


if __name__ == "__main__":
    main()
