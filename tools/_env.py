"""Environment construction for build-script probes.

A probe prints different directives depending on what it finds in its
environment (RUSTC, TARGET, CARGO_FEATURE_*), and Buck2 only keys the
action on env it was explicitly told about.  Everything a probe sees is
therefore built here from an explicit overrides map instead of by
mutating os.environ.

Two policies:
  merge  - the ambient environment, determinism pins, then overrides;
           PATH from the standard PATH arguments when any is given
  clean  - whitelisted host vars, determinism pins, PATH from the
           standard PATH arguments (required), then overrides
"""

import os
import sys

# Vars passed through from the host environment under the clean policy.
_PASSTHROUGH = frozenset({
    "HOME", "USER", "LOGNAME",
    "TMPDIR", "TEMP", "TMP",
    "TERM",
    "BUCK_SCRATCH_PATH",
})

# Vars pinned to fixed values for determinism.
_DETERMINISM_PINS = {
    "LC_ALL": "C",
    "LANG": "C",
    "SOURCE_DATE_EPOCH": "315576000",
    "CCACHE_DISABLE": "1",
    "RUSTC_WRAPPER": "",
    "CARGO_BUILD_RUSTC_WRAPPER": "",
}


def clean_env():
    """Return whitelisted host vars plus determinism pins."""
    env = {}
    for key in _PASSTHROUGH:
        val = os.environ.get(key)
        if val is not None:
            env[key] = val
    env.update(_DETERMINISM_PINS)
    return env


def merged_env():
    """Return a copy of the ambient environment with determinism pins applied."""
    env = dict(os.environ)
    env.update(_DETERMINISM_PINS)
    return env


def child_env(overrides, clean=False, path=None):
    """Build the full env dict for a probe subprocess.

    *overrides* always win.  *path*, when not None, sets PATH before the
    overrides are applied; the clean policy has no PATH otherwise.
    """
    env = clean_env() if clean else merged_env()
    if path is not None:
        env["PATH"] = path
    env.update(overrides)
    return env


def add_path_args(parser):
    """Register the standard three-way PATH arguments on an argparse parser."""
    parser.add_argument("--hermetic-path", action="append",
                        dest="hermetic_path", default=[],
                        help="Set PATH to only these dirs (repeatable)")
    parser.add_argument("--allow-host-path", action="store_true",
                        help="Allow host PATH (bootstrap escape hatch)")
    parser.add_argument("--hermetic-empty", action="store_true",
                        help="Start with empty PATH")
    parser.add_argument("--path-prepend", action="append",
                        dest="path_prepend", default=[],
                        help="Dir to prepend to PATH (repeatable)")


def has_path_args(args):
    """True if any of the standard PATH arguments was given."""
    return bool(args.hermetic_path or args.hermetic_empty
                or args.allow_host_path or args.path_prepend)


def resolve_path(args, host_path="", require_mode=True):
    """Return the PATH value selected by the standard PATH arguments.

    Requires args parsed by add_path_args().  When none of the three base
    options was given, exits with status 1 if *require_mode*, otherwise
    starts from *host_path*.
    """
    if args.hermetic_path:
        path = ":".join(os.path.abspath(p) for p in args.hermetic_path)
    elif args.hermetic_empty:
        path = ""
    elif args.allow_host_path or not require_mode:
        path = host_path
    else:
        print("error: --clean-env requires --hermetic-path, --hermetic-empty, "
              "or --allow-host-path", file=sys.stderr)
        sys.exit(1)
    if args.path_prepend:
        prepend = ":".join(os.path.abspath(p) for p in args.path_prepend)
        path = prepend + (":" + path if path else "")
    return path
