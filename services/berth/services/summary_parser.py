"""Human-readable one-line summaries of finished operations.

Failures and unrecognised commands always get a generic summary. When
operation_logs.detailed_summaries is enabled, successful compose commands
get a summary derived from the compose progress lines in the message
stream ("Container web Started", "Network app_default Created", ...).
Names are reported in order of first appearance.
"""

from collections.abc import Callable, Iterable


def failure_summary(command: str, exit_code: int) -> str:
    return f"Operation '{command}' failed with exit code {exit_code}"


def success_summary(command: str) -> str:
    return f"Operation '{command}' completed successfully"


def format_names(names: list[str]) -> str:
    """'a', 'a and b', 'a, b and c', 'a, b, c and 2 others'."""
    if not names:
        return ""
    if len(names) == 1:
        return names[0]
    if len(names) <= 4:
        return ", ".join(names[:-1]) + " and " + names[-1]
    remaining = len(names) - 3
    suffix = "1 other" if remaining == 1 else f"{remaining} others"
    return f"{', '.join(names[:3])} and {suffix}"


def format_resources(kind: str, names: list[str]) -> str:
    """'1 network (x)', '3 volumes (a, b and c)', '6 networks (a, b, c and 3 others)'."""
    if not names:
        return ""
    if len(names) == 1:
        return f"1 {kind} ({names[0]})"
    if len(names) <= 4:
        inner = ", ".join(names[:-1]) + " and " + names[-1]
    else:
        inner = f"{', '.join(names[:3])} and {len(names) - 3} others"
    return f"{len(names)} {kind}s ({inner})"


def _collect(lines: Iterable[str], prefix: str, *suffixes: str) -> list[str]:
    """Names from lines shaped '<prefix><name><suffix>', deduplicated in order."""
    found: dict[str, None] = {}
    for line in lines:
        if not line.startswith(prefix):
            continue
        for suffix in suffixes:
            if line.endswith(suffix):
                name = line[len(prefix) : -len(suffix)].strip()
                if name:
                    found[name] = None
                break
    return list(found)


_LAYER_MARKERS = (
    "Pulling fs layer",
    "Downloading",
    "Download complete",
    "Pull complete",
    "Extracting",
)


def _pull(lines: list[str]) -> str:
    seen: dict[str, None] = {}
    updated: set[str] = set()
    layer_activity = False

    for line in lines:
        if line.endswith(" Pulling"):
            seen[line[: -len(" Pulling")].strip()] = None
        if any(marker in line for marker in _LAYER_MARKERS):
            layer_activity = True
        if line.endswith(" Pulled"):
            if layer_activity:
                updated.add(line[: -len(" Pulled")].strip())
            layer_activity = False

    pulled = [s for s in seen if s in updated]
    current = [s for s in seen if s not in updated]

    if not pulled and not current:
        return "Images checked"
    if not pulled:
        return "All images up to date"
    if not current:
        return f"Pulled new images for {format_names(pulled)}"
    return f"Pulled new images for {format_names(pulled)}; {format_names(current)} already up to date"


def _up(lines: list[str]) -> str:
    parts = []
    if started := _collect(lines, "Container ", " Started"):
        parts.append(f"Started {format_names(started)}")
    if networks := _collect(lines, "Network ", " Created"):
        parts.append(f"created {format_resources('network', networks)}")
    if volumes := _collect(lines, "Volume ", " Created"):
        parts.append(f"created {format_resources('volume', volumes)}")
    return "; ".join(parts) or "Stack started"


def _down(lines: list[str]) -> str:
    parts = []
    if stopped := _collect(lines, "Container ", " Stopped"):
        parts.append(f"Stopped {format_names(stopped)}")
    if removed := _collect(lines, "Container ", " Removed"):
        parts.append(f"removed {format_names(removed)}")
    if networks := _collect(lines, "Network ", " Removed"):
        parts.append(f"removed {format_resources('network', networks)}")
    if volumes := _collect(lines, "Volume ", " Removed"):
        parts.append(f"removed {format_resources('volume', volumes)}")
    return "; ".join(parts) or "Stack stopped"


def _restart(lines: list[str]) -> str:
    names = _collect(lines, "Container ", " Restarted", " Started")
    return f"Restarted {format_names(names)}" if names else "Containers restarted"


def _start(lines: list[str]) -> str:
    names = _collect(lines, "Container ", " Started")
    return f"Started {format_names(names)}" if names else "Containers started"


def _stop(lines: list[str]) -> str:
    names = _collect(lines, "Container ", " Stopped")
    return f"Stopped {format_names(names)}" if names else "Containers stopped"


_PARSERS: dict[str, Callable[[list[str]], str]] = {
    "pull": _pull,
    "up": _up,
    "down": _down,
    "restart": _restart,
    "start": _start,
    "stop": _stop,
}


def generate_summary(
    command: str,
    success: bool,
    exit_code: int,
    messages: Iterable[str] = (),
    detailed: bool = False,
) -> str:
    """Summary for a finished operation. messages are the raw message_data lines."""
    if not success:
        return failure_summary(command, exit_code)
    parser = _PARSERS.get(command)
    if not detailed or parser is None:
        return success_summary(command)
    return parser([m.strip() for m in messages])
