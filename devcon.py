#!/usr/bin/env python3
"""devcon - Devcontainer discovery and template helper.

A CLI tool that lists running devcontainers, execs into them by name, and
scaffolds .devcontainer folders from a library of templates.
Target location: ~/.local/bin/devcon
"""

import argparse
import os
import re
import shutil
import subprocess
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path

import argcomplete
from pick import pick

# Labels read from `ps` output
LOCAL_FOLDER_LABEL = "devcontainer.local_folder"
COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"
COMPOSE_CONTAINER_NUMBER_LABEL = "com.docker.compose.container-number"

# Column order of PS_FORMAT
PS_FORMAT = "|".join(
    [
        "{{.ID}}",
        f'{{{{.Label "{LOCAL_FOLDER_LABEL}"}}}}',
        f'{{{{.Label "{COMPOSE_PROJECT_LABEL}"}}}}',
        f'{{{{.Label "{COMPOSE_SERVICE_LABEL}"}}}}',
        f'{{{{.Label "{COMPOSE_CONTAINER_NUMBER_LABEL}"}}}}',
        "{{.Names}}",
    ]
)
PS_FIELD_COUNT = 6

INSPECT_LOCAL_FOLDER_FORMAT = f'{{{{ index .Config.Labels "{LOCAL_FOLDER_LABEL}" }}}}'

DEVCONTAINER_DIR = ".devcontainer"
DEVCONTAINER_JSON = "devcontainer.json"

# devcontainer.json permits comments, so these are text patterns rather than a JSON parse
NAME_FIELD_RE = re.compile(r'("name"\s*:\s*")[^"]*(")')
REMOTE_USER_RE = re.compile(r'\n[^/]*"remoteUser"\s*:\s*"([^"]*)"')

SUPPORTED_RUNTIMES = ("docker", "podman")

# Default configuration
DEFAULT_CONFIG = {
    "template_paths": [],
    "runtime": None,
}

# Global verbose flag
VERBOSE = False


class DevconError(Exception):
    """Base class for errors reported to the user."""


class RuntimeUnavailable(DevconError):
    """Container runtime missing, failed to start, or exited non-zero."""


class MalformedOutput(DevconError):
    """Runtime output did not have the expected shape."""


class ConfigurationError(DevconError):
    """Configuration is missing or invalid."""


class FolderReadError(DevconError):
    """A template search folder could not be read."""


class NotFound(DevconError):
    """Named container or template does not exist."""


class DestinationConflict(DevconError):
    """Target .devcontainer already exists."""


class FileIOError(DevconError):
    """Copy, link, read or write failed."""


@dataclass(frozen=True)
class LabelRecord:
    """One parsed line of `ps` output."""

    id: str
    local_folder: str
    compose_project: str
    compose_service: str
    compose_container_number: str
    runtime_name: str


@dataclass(frozen=True)
class ContainerRecord:
    id: str
    runtime_name: str
    derived_name: str


@dataclass(frozen=True)
class TemplateRecord:
    name: str
    # Includes the trailing .devcontainer folder
    path: Path


def verbose_print(msg: str) -> None:
    """Print message if verbose mode is enabled."""
    if VERBOSE:
        print(f"[verbose] {msg}", file=sys.stderr)


def verbose_cmd(cmd: list[str]) -> None:
    """Print command if verbose mode is enabled."""
    if VERBOSE:
        print(f'[verbose] $ {" ".join(cmd)}', file=sys.stderr)


def load_config(global_config_dir: Path | None = None) -> dict:
    """Load configuration from TOML files.

    Config is loaded in order (later overrides earlier):
    1. Default config
    2. Global config: ~/.config/devcon/config.toml
    3. Project config: .devcon.toml in current directory
    """
    config = DEFAULT_CONFIG.copy()

    if global_config_dir is None:
        global_config_dir = Path.home() / ".config" / "devcon"

    for config_file in (global_config_dir / "config.toml", Path.cwd() / ".devcon.toml"):
        if not config_file.exists():
            continue
        verbose_print(f"Loading config: {config_file}")
        try:
            with open(config_file, "rb") as f:
                config.update(tomllib.load(f))
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid config file {config_file}: {e}") from e

    return config


def expand_folder(folder: str) -> str:
    """Expand environment variables and ~ in a template folder path."""
    return os.path.expanduser(os.path.expandvars(folder))


def get_template_folders(config: dict) -> list[str]:
    """Return configured template folders, expanded, in search order."""
    paths = config.get("template_paths") or []
    if isinstance(paths, str) or not all(isinstance(p, str) for p in paths):
        raise ConfigurationError("template_paths must be a list of strings")
    return [expand_folder(p) for p in paths]


def get_container_runtime(config: dict | None = None) -> str:
    """Pick the container runtime: configured one, else docker, else podman.

    Raises:
        RuntimeUnavailable: If no runtime binary is found
    """
    configured = (config or {}).get("runtime")
    candidates = [configured] if configured else list(SUPPORTED_RUNTIMES)
    for runtime in candidates:
        if shutil.which(runtime):
            return runtime
    raise RuntimeUnavailable(
        f"No container runtime found ({' or '.join(candidates)} required)"
    )


def derive_name(record: LabelRecord) -> str:
    """Compute the display name for a devcontainer.

    Containers started from a local folder are named after the last path
    segment of that folder. Compose-based containers without a local folder
    label fall back to "project/service".
    """
    if record.local_folder:
        return re.split(r"[/\\]", record.local_folder)[-1]
    return f"{record.compose_project}/{record.compose_service}"


def parse_ps_output(output: str) -> list[LabelRecord]:
    """Parse pipe-delimited `ps --format PS_FORMAT` output.

    Raises:
        MalformedOutput: On the first line with too few fields
    """
    records = []
    for line_number, line in enumerate(output.splitlines(), 1):
        if not line.strip():
            continue
        parts = line.split("|")
        if len(parts) < PS_FIELD_COUNT:
            raise MalformedOutput(
                f"Unexpected runtime output on line {line_number}: {line!r} "
                f"(expected {PS_FIELD_COUNT} fields, got {len(parts)})"
            )
        records.append(LabelRecord(*parts[:PS_FIELD_COUNT]))
    return records


def run_runtime(runtime: str, args: list[str]) -> str:
    """Run a runtime command and return its stdout.

    Raises:
        RuntimeUnavailable: If the command can't start or exits non-zero
    """
    cmd = [runtime, *args]
    verbose_cmd(cmd)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except (OSError, UnicodeDecodeError) as e:
        raise RuntimeUnavailable(f"Failed to run {runtime}: {e}") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise RuntimeUnavailable(
            f"{runtime} {args[0]} exited with code {result.returncode}: {stderr}"
        )
    return result.stdout


def list_devcontainers(runtime: str) -> list[ContainerRecord]:
    """List running devcontainers in runtime output order."""
    output = run_runtime(runtime, ["ps", "--format", PS_FORMAT])
    return [
        ContainerRecord(
            id=record.id,
            runtime_name=record.runtime_name,
            derived_name=derive_name(record),
        )
        for record in parse_ps_output(output)
    ]


def find_devcontainer(name_or_id: str, containers: list[ContainerRecord]) -> ContainerRecord:
    """Find a container by id, runtime name or derived name (first match wins)."""
    for container in containers:
        if name_or_id in (container.id, container.runtime_name, container.derived_name):
            return container
    raise NotFound(f"Devcontainer '{name_or_id}' not found")


def get_local_folder(runtime: str, container: str) -> str:
    """Look up the host folder a devcontainer was started from."""
    output = run_runtime(runtime, ["inspect", container, "--format", INSPECT_LOCAL_FOLDER_FORMAT])
    return output.strip()


def get_remote_user(devcontainer_json_path: Path) -> str | None:
    """Read remoteUser from devcontainer.json, skipping commented-out lines.

    Returns None if the file has no remoteUser setting.
    """
    try:
        content = Path(devcontainer_json_path).read_text()
    except OSError as e:
        raise FileIOError(f"Error reading file {devcontainer_json_path}: {e}") from e

    match = REMOTE_USER_RE.search(content)
    if match is None:
        return None
    return match.group(1)


def detect_remote_user(runtime: str, container_id: str) -> str | None:
    """Find remoteUser for a running container via its local folder label."""
    local_folder = get_local_folder(runtime, container_id)
    if not local_folder:
        return None
    json_path = Path(local_folder) / DEVCONTAINER_DIR / DEVCONTAINER_JSON
    if not json_path.is_file():
        verbose_print(f"No {json_path}, using container default user")
        return None
    return get_remote_user(json_path)


def exec_in_devcontainer(
    runtime: str,
    container_id: str,
    command: list[str],
    user: str | None = None,
) -> int:
    """Run an interactive command in a container, wired to this terminal.

    Blocks until the command exits and returns its exit code. On Ctrl-C the
    child is terminated and reaped before the interrupt propagates.
    """
    cmd = [runtime, "exec", "-it"]
    if user:
        cmd.extend(["-u", user])
    cmd.append(container_id)
    cmd.extend(command)

    verbose_cmd(cmd)
    try:
        proc = subprocess.Popen(cmd)
    except OSError as e:
        raise RuntimeUnavailable(f"Failed to start {runtime}: {e}") from e

    with proc:
        try:
            return proc.wait()
        except KeyboardInterrupt:
            proc.terminate()
            proc.wait()
            raise


def is_template_folder(folder: Path) -> bool:
    """Check whether folder holds .devcontainer/devcontainer.json as a file."""
    marker = folder / DEVCONTAINER_DIR / DEVCONTAINER_JSON
    return marker.exists() and not marker.is_dir()


def get_templates_from_folder(folder: str) -> list[TemplateRecord]:
    """List templates directly under one search folder.

    Raises:
        FolderReadError: If the folder can't be listed
    """
    folder_path = Path(folder).absolute()
    try:
        entries = sorted(folder_path.iterdir())
    except OSError as e:
        raise FolderReadError(f"Error reading devcontainer templates from {folder}: {e}") from e

    templates = []
    for entry in entries:
        if entry.is_dir() and is_template_folder(entry):
            templates.append(TemplateRecord(name=entry.name, path=entry / DEVCONTAINER_DIR))
    verbose_print(f"Found {len(templates)} template(s) in {folder}")
    return templates


def get_templates(folders: list[str]) -> list[TemplateRecord]:
    """Discover templates across search folders.

    Folders are searched in order; when two folders hold a template with the
    same name, the earlier folder wins. Result is sorted by name.

    Raises:
        ConfigurationError: If no folders are configured
        FolderReadError: If any folder can't be read (no partial result)
    """
    if not folders:
        raise ConfigurationError(
            "No template folders configured - set template_paths in "
            "~/.config/devcon/config.toml"
        )

    templates = {}
    for folder in folders:
        for template in get_templates_from_folder(folder):
            if template.name in templates:
                verbose_print(f"Skipping {template.path}: '{template.name}' already found")
                continue
            templates[template.name] = template

    return sorted(templates.values(), key=lambda t: t.name)


def get_template_by_name(name: str, folders: list[str]) -> TemplateRecord:
    """Return the template called name.

    Raises:
        NotFound: If no template has that name
    """
    for template in get_templates(folders):
        if template.name == name:
            return template
    raise NotFound(f"Template '{name}' not found")


def check_destination(dest_dir: Path) -> Path:
    """Return dest_dir/.devcontainer, refusing if anything is already there."""
    target = Path(dest_dir) / DEVCONTAINER_DIR
    # lexists so a dangling symlink also counts
    if os.path.lexists(target):
        raise DestinationConflict(
            f"{dest_dir} already contains a {DEVCONTAINER_DIR} folder"
        )
    return target


def copy_template(template: TemplateRecord, dest_dir: Path) -> Path:
    """Copy a template's .devcontainer folder into dest_dir.

    Returns the created .devcontainer path.
    """
    target = check_destination(dest_dir)
    verbose_print(f"Copying {template.path} -> {target}")
    try:
        shutil.copytree(template.path, target)
    except (OSError, shutil.Error) as e:
        shutil.rmtree(target, ignore_errors=True)
        raise FileIOError(f"Error copying folder: {e}") from e
    return target


def link_template(template: TemplateRecord, dest_dir: Path) -> Path:
    """Symlink a template's .devcontainer folder into dest_dir.

    A .gitignore containing "*" is written through the link so the linked
    files stay out of the consuming repository.
    """
    target = check_destination(dest_dir)
    verbose_print(f"Linking {target} -> {template.path}")
    try:
        os.symlink(template.path, target, target_is_directory=True)
    except OSError as e:
        raise FileIOError(f"Error linking folder: {e}") from e

    try:
        (target / ".gitignore").write_text("*\n")
    except OSError as e:
        os.unlink(target)
        raise FileIOError(f"Error writing .gitignore: {e}") from e
    return target


def get_default_name_for_folder(folder_path: Path) -> str:
    """Default devcontainer name for a folder: its own name."""
    return Path(folder_path).absolute().name


def set_devcontainer_name(devcontainer_json_path: Path, name: str) -> None:
    """Rewrite the "name" value in devcontainer.json, keeping everything else.

    Every "name" assignment in the text is replaced.
    """
    path = Path(devcontainer_json_path)
    try:
        content = path.read_text()
    except OSError as e:
        raise FileIOError(f"Error reading file {path}: {e}") from e

    content = NAME_FIELD_RE.sub(lambda m: m.group(1) + name + m.group(2), content)

    try:
        path.write_text(content)
    except OSError as e:
        raise FileIOError(f"Error writing file {path}: {e}") from e


def select_template_interactive(templates: list[TemplateRecord]) -> TemplateRecord:
    """Show a picker for templates. Raises NotFound if cancelled or empty."""
    if not templates:
        raise NotFound("No templates found in configured template folders")
    try:
        _, index = pick([t.name for t in templates], "Select a template:")
    except KeyboardInterrupt:
        raise NotFound("No template selected") from None
    if index is None or index < 0:
        raise NotFound("No template selected")
    return templates[index]


def devcontainer_name_completer(prefix, parsed_args, **kwargs):
    """argcomplete completer for running devcontainer names."""
    try:
        containers = list_devcontainers(get_container_runtime(load_config()))
    except DevconError as e:
        argcomplete.warn(str(e))
        return []
    names = set()
    for container in containers:
        names.add(container.derived_name)
        names.add(container.runtime_name)
    return sorted(n for n in names if n.startswith(prefix))


def template_name_completer(prefix, parsed_args, **kwargs):
    """argcomplete completer for template names."""
    try:
        templates = get_templates(get_template_folders(load_config()))
    except DevconError as e:
        argcomplete.warn(str(e))
        return []
    return [t.name for t in templates if t.name.startswith(prefix)]


def parse_args(argv: list[str]) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="devcon",
        description="Devcontainer discovery and template helper",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Print commands being executed"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    list_parser = subparsers.add_parser(
        "list", help="List running devcontainers", description="Lists devcontainers that are currently running"
    )
    list_group = list_parser.add_mutually_exclusive_group()
    list_group.add_argument(
        "--include-container-names",
        action="store_true",
        help="Also include container names in the list",
    )
    list_group.add_argument(
        "--verbose", "-v", action="store_true", help="Show devcontainer and container names as a table"
    )

    exec_parser = subparsers.add_parser(
        "exec",
        help="Execute a command in a devcontainer",
        description="Execute a command in a devcontainer, similar to `docker exec`.",
    )
    exec_parser.add_argument(
        "--user", "-u", metavar="USER", help="User to run as (default: remoteUser from devcontainer.json)"
    )
    exec_parser.add_argument(
        "name", metavar="DEVCONTAINER_NAME", help="Devcontainer name, container name or id"
    ).completer = devcontainer_name_completer
    exec_parser.add_argument(
        "exec_command",
        nargs=argparse.REMAINDER,
        metavar="COMMAND",
        help="Command and arguments to run (default: bash)",
    )

    template_parser = subparsers.add_parser(
        "template", help="Work with devcontainer templates"
    )
    template_sub = template_parser.add_subparsers(
        dest="template_command", metavar="TEMPLATE_COMMAND", required=True
    )
    template_sub.add_parser("list", help="List devcontainer templates")

    add_parser = template_sub.add_parser(
        "add",
        help="Add devcontainer from template",
        description="Add a devcontainer definition to the current folder using the specified template",
    )
    add_parser.add_argument(
        "name", nargs="?", metavar="TEMPLATE_NAME", help="Template to copy (prompts if omitted)"
    ).completer = template_name_completer
    add_parser.add_argument(
        "--devcontainer-name",
        metavar="NAME",
        help="Name to set in devcontainer.json (default: current folder name)",
    )

    add_link_parser = template_sub.add_parser(
        "add-link",
        help="Symlink devcontainer from template",
        description="Symlink a devcontainer definition to the current folder using the specified template",
    )
    add_link_parser.add_argument(
        "name", nargs="?", metavar="TEMPLATE_NAME", help="Template to link (prompts if omitted)"
    ).completer = template_name_completer

    completion_parser = subparsers.add_parser(
        "completion",
        help="Generate shell completion script",
        description="To load completion run: eval \"$(devcon completion)\"",
    )
    completion_parser.add_argument(
        "--shell", choices=["bash", "zsh", "fish"], default="bash", help="Target shell (default: bash)"
    )

    argcomplete.autocomplete(parser)

    return parser.parse_args(argv)


def run_list_mode(args: argparse.Namespace, config: dict) -> None:
    """Run list: print running devcontainer names."""
    containers = list_devcontainers(get_container_runtime(config))

    if args.verbose:
        containers = sorted(containers, key=lambda c: c.derived_name)
        header = "DEVCONTAINER NAME"
        width = max([len(header), *(len(c.derived_name) for c in containers)]) + 2
        print(f"{header:<{width}}CONTAINER NAME")
        print(f"{'-' * len(header):<{width}}--------------")
        for container in containers:
            print(f"{container.derived_name:<{width}}{container.runtime_name}")
        return

    names = []
    for container in containers:
        names.append(container.derived_name)
        if args.include_container_names:
            names.append(container.runtime_name)
    for name in sorted(names):
        print(name)


def run_exec_mode(args: argparse.Namespace, config: dict) -> int:
    """Run exec: resolve the devcontainer and run a command in it."""
    runtime = get_container_runtime(config)
    container = find_devcontainer(args.name, list_devcontainers(runtime))
    verbose_print(f"Resolved '{args.name}' to container {container.id} ({container.runtime_name})")

    user = args.user
    if user is None:
        user = detect_remote_user(runtime, container.id)

    command = args.exec_command or ["bash"]
    return exec_in_devcontainer(runtime, container.id, command, user=user)


def resolve_template(args: argparse.Namespace, config: dict) -> TemplateRecord:
    folders = get_template_folders(config)
    if args.name:
        return get_template_by_name(args.name, folders)
    return select_template_interactive(get_templates(folders))


def run_template_list_mode(args: argparse.Namespace, config: dict) -> None:
    for template in get_templates(get_template_folders(config)):
        print(template.name)


def run_template_add_mode(args: argparse.Namespace, config: dict) -> None:
    """Run template add: copy template into cwd and set its name."""
    template = resolve_template(args, config)
    cwd = Path.cwd()
    target = copy_template(template, cwd)

    json_path = target / DEVCONTAINER_JSON
    name = args.devcontainer_name or get_default_name_for_folder(cwd)
    set_devcontainer_name(json_path, name)
    print(f"Added {DEVCONTAINER_DIR} from template '{template.name}' (name: {name})")


def run_template_add_link_mode(args: argparse.Namespace, config: dict) -> None:
    """Run template add-link: symlink template into cwd."""
    template = resolve_template(args, config)
    link_template(template, Path.cwd())
    print(f"Linked {DEVCONTAINER_DIR} to template '{template.name}' ({template.path})")


def run_completion_mode(args: argparse.Namespace) -> None:
    print(argcomplete.shellcode(["devcon"], shell=args.shell))


TEMPLATE_MODES = {
    "list": run_template_list_mode,
    "add": run_template_add_mode,
    "add-link": run_template_add_link_mode,
}


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    global VERBOSE

    if argv is None:
        argv = sys.argv[1:]

    args = parse_args(argv)

    # Set verbose mode
    if args.debug:
        VERBOSE = True

    if args.command == "completion":
        run_completion_mode(args)
        return

    try:
        config = load_config()
        if args.command == "list":
            run_list_mode(args, config)
        elif args.command == "exec":
            returncode = run_exec_mode(args, config)
            if returncode != 0:
                sys.exit(returncode)
        elif args.command == "template":
            TEMPLATE_MODES[args.template_command](args, config)
    except DevconError as e:
        sys.exit(f"Error: {e}")
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
