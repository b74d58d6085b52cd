"""
Generate Mermaid diagrams from the state machine enums and transition tables.

Usage:
    python scripts/generate_state_diagrams.py            # print to stdout
    python scripts/generate_state_diagrams.py --update   # rewrite docs/state_diagrams.md
    python scripts/generate_state_diagrams.py --check    # fail when the docs are stale (CI)
"""
import argparse
import re
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

# Make the app package importable when run from anywhere
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.state_machine.states import (  # noqa: E402
    IngestionState,
    INGESTION_TRANSITIONS,
    INGESTION_TERMINAL_STATES,
    WebhookEventStatus,
    EVENT_STATUS_TRANSITIONS,
)

DOCS_PATH = Path(__file__).resolve().parent.parent / "docs" / "state_diagrams.md"

START_MARKER = "<!-- STATE_DIAGRAMS_START -->"
END_MARKER = "<!-- STATE_DIAGRAMS_END -->"

INGESTION_LABELS: dict[str, str] = {
    IngestionState.START.value: "Request received",
    IngestionState.CHALLENGE_HANDLED.value: "Handshake answered",
    IngestionState.CONFIG_LOOKUP.value: "Resolve platform and config",
    IngestionState.NOT_CONFIGURED.value: "404 not configured",
    IngestionState.SECURITY_CHECK.value: "Security gate",
    IngestionState.REJECTED.value: "403 / 422 / 429 rejected",
    IngestionState.SIGNATURE_CHECK.value: "Signature and replay check",
    IngestionState.UNAUTHORIZED.value: "401 unauthorized",
    IngestionState.EXTRACT_EVENT.value: "Parse body and extract envelope",
    IngestionState.VALIDATE.value: "Validate envelope",
    IngestionState.VALIDATION_FAILED.value: "422 validation failed",
    IngestionState.PERSIST.value: "Store event",
    IngestionState.RECORD_METRIC.value: "Count received",
    IngestionState.ENQUEUE.value: "Enqueue for processing",
    IngestionState.ACK.value: "200 acknowledged",
    IngestionState.INTERNAL_ERROR.value: "500 internal error",
}

EVENT_STATUS_LABELS: dict[str, str] = {
    WebhookEventStatus.PENDING.value: "Waiting for a worker",
    WebhookEventStatus.PROCESSING.value: "Being normalised",
    WebhookEventStatus.PROCESSED.value: "Done",
    WebhookEventStatus.FAILED.value: "Failed, retry pending",
    WebhookEventStatus.IGNORED.value: "Filtered out",
}


def _sanitize_id(state_value: str) -> str:
    """Mermaid ids may not contain dots."""
    return state_value.replace(".", "_")


def generate_mermaid_from_transitions(
    transitions: dict[Any, list[Any]],
    labels: dict[str, str],
    initial: Enum,
    terminal: Iterable[Enum] = (),
) -> str:
    """
    Build a stateDiagram-v2 from a transition dictionary.

    Args:
        transitions: {state: [target_states]}
        labels: {state_value: "human readable label"}
        initial: state the [*] entry points to
        terminal: states that get an edge to [*]
    """
    lines: list[str] = ["stateDiagram-v2"]

    all_states: set[str] = {initial.value}
    for source, targets in transitions.items():
        all_states.add(source.value)
        for target in targets:
            all_states.add(target.value)
    all_states.update(state.value for state in terminal)

    for state_value in sorted(all_states):
        lines.append(f"    {_sanitize_id(state_value)} : {labels.get(state_value, state_value)}")

    lines.append("")
    lines.append(f"    [*] --> {_sanitize_id(initial.value)}")
    lines.append("")

    for source, targets in transitions.items():
        source_id = _sanitize_id(source.value)
        for target in targets:
            lines.append(f"    {source_id} --> {_sanitize_id(target.value)}")

    terminal_ids = sorted(_sanitize_id(state.value) for state in terminal)
    if terminal_ids:
        lines.append("")
        for state_id in terminal_ids:
            lines.append(f"    {state_id} --> [*]")

    return "\n".join(lines)


def generate_ingestion_diagram() -> str:
    """IngestionState, plus the note that any state may fall into INTERNAL_ERROR."""
    diagram = generate_mermaid_from_transitions(
        INGESTION_TRANSITIONS,
        INGESTION_LABELS,
        IngestionState.START,
        INGESTION_TERMINAL_STATES,
    )
    return diagram + (
        f"\n\n    note right of {IngestionState.INTERNAL_ERROR.value}\n"
        "        Reachable from every non-terminal state\n"
        "    end note"
    )


def generate_event_status_diagram() -> str:
    terminal = [status for status, targets in EVENT_STATUS_TRANSITIONS.items() if not targets]
    return generate_mermaid_from_transitions(
        EVENT_STATUS_TRANSITIONS,
        EVENT_STATUS_LABELS,
        WebhookEventStatus.PENDING,
        terminal,
    )


def generate_all_diagrams() -> dict[str, str]:
    """{title: mermaid source} for every state machine"""
    return {
        "Webhook ingestion (IngestionState)": generate_ingestion_diagram(),
        "Event processing (WebhookEventStatus)": generate_event_status_diagram(),
    }


def format_diagrams_as_markdown(diagrams: dict[str, str]) -> str:
    sections: list[str] = []
    for name, mermaid_code in diagrams.items():
        sections.append(f"#### {name}\n")
        sections.append(f"```mermaid\n{mermaid_code}\n```\n")
    return "\n".join(sections)


def _section(markdown_content: str) -> str:
    return f"{START_MARKER}\n\n### State machine diagrams\n\n{markdown_content}\n{END_MARKER}"


def update_docs(markdown_content: str, path: Path = DOCS_PATH) -> None:
    """Replace the marked block in the docs file, creating the file if needed."""
    new_section = _section(markdown_content)
    content = path.read_text(encoding="utf-8") if path.exists() else "# State Machines\n"

    if START_MARKER in content:
        pattern = re.compile(re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER), re.DOTALL)
        content = pattern.sub(lambda _: new_section, content)
    else:
        content = content.rstrip("\n") + "\n\n" + new_section + "\n"

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    print(f"Updated: {path}")


def check_docs(markdown_content: str, path: Path = DOCS_PATH) -> bool:
    """True when the diagrams in the docs file match the code."""
    if not path.exists():
        print(f"Error: {path} does not exist")
        return False

    content = path.read_text(encoding="utf-8")
    pattern = re.compile(re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER), re.DOTALL)
    match = pattern.search(content)
    if not match:
        print(f"Error: no diagram block in {path}")
        return False

    if match.group(0) == _section(markdown_content):
        print("Diagrams are in sync with the code")
        return True

    print(f"Error: diagrams in {path} are out of date")
    print("Run: python scripts/generate_state_diagrams.py --update")
    return False


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate Mermaid diagrams from the state machines")
    parser.add_argument("--update", action="store_true", help="rewrite docs/state_diagrams.md")
    parser.add_argument("--check", action="store_true", help="exit 1 when docs/state_diagrams.md is stale")
    args = parser.parse_args()

    markdown = format_diagrams_as_markdown(generate_all_diagrams())

    if args.check:
        sys.exit(0 if check_docs(markdown) else 1)
    elif args.update:
        update_docs(markdown)
    else:
        print(markdown)


if __name__ == "__main__":
    main()
