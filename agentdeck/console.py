"""Terminal front end for an agent session.

Launches (or recovers) an agent session for a project directory and relays
prompts typed on stdin. Replies stream in over the session's event channel
and are redrawn as they grow.

Usage:
    AGENTDECK_PROJECT_DIR=/path/to/project python -m agentdeck.console

Environment:
    AGENTDECK_HOST_URL        - Agent host base URL (default: http://localhost:23712)
    AGENTDECK_AGENT_ID        - Agent to launch (default: opencode)
    AGENTDECK_PROJECT_DIR     - Project the agent works in (required)
    AGENTDECK_PREFERRED_MODEL - "provider/model" used when the session names none

Commands:
    /model provider/model   switch model      /models   list models
    /expand                 toggle thinking   /dismiss  clear the error line
    /stop                   stop the session  /quit     leave (session keeps running)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TextIO

from agentdeck.config import Settings
from agentdeck.conversation import (
    MessageGroup,
    PartKind,
    Role,
    layout_group,
    tool_view,
)
from agentdeck.session.controller import SessionController, SessionSnapshot
from agentdeck.session.resolver import SessionHeader
from agentdeck.session.schemas import ModelRef, SessionStatus

logger = logging.getLogger(__name__)

_STATUS_LABELS = {
    SessionStatus.STARTING: "starting…",
    SessionStatus.RUNNING: "running",
    SessionStatus.ERROR: "error",
    SessionStatus.STOPPED: "stopped",
}


def format_tokens(count: int) -> str:
    return f"{count / 1000:.1f}K" if count >= 1000 else str(count)


def format_header(snapshot: SessionSnapshot) -> str:
    """One-line status bar: agent, status, model and context use."""
    session = snapshot.session
    if session is None:
        return "[no session]"
    bits = [session.agent_name or session.agent_id or "agent", _STATUS_LABELS[session.status]]
    header: SessionHeader = snapshot.header
    if header.label:
        bits.append(header.label)
    if header.utilization is not None:
        bits.append(f"{header.utilization}% context")
    if snapshot.busy:
        bits.append("working")
    return "[" + " | ".join(bits) + "]"


def render_group(group: MessageGroup, settings: Settings, expanded: bool = False) -> list[str]:
    """Render one role group as display lines."""
    layout = layout_group(group, settings.thinking_preview_lines)
    prefix = "you" if group.role is Role.USER else "agent"
    lines = [f"{prefix}>"]

    if layout.thinking is not None:
        lines.extend(f"  ~ {line}" for line in layout.thinking.display(expanded).split("\n"))
        if layout.thinking.needs_expand and not expanded:
            lines.append("  ~ (… /expand to show all)")

    for part in layout.content:
        kind = part.kind
        if kind is PartKind.TEXT:
            if part.body:
                lines.extend(f"  {line}" for line in part.body.split("\n"))
        elif kind in (PartKind.TOOL_INVOCATION, PartKind.TOOL_RESULT):
            view = tool_view(part, settings.tool_output_limit)
            lines.append(f"  [{view.name}] {'running' if view.running else 'done'}")
            if view.output:
                lines.extend(f"    {line}" for line in view.output.split("\n"))
    return lines


def render_transcript(snapshot: SessionSnapshot, settings: Settings, expanded: bool = False) -> str:
    lines: list[str] = []
    for group in snapshot.groups:
        lines.extend(render_group(group, settings, expanded))
    return "\n".join(lines)


def parse_command(line: str) -> tuple[str, str] | None:
    """Split "/name args" into (name, args); None for plain prompts."""
    if not line.startswith("/"):
        return None
    name, _, args = line[1:].partition(" ")
    return name.lower(), args.strip()


class Console:
    """Draws snapshots to a text stream and turns input lines into actions."""

    def __init__(self, controller: SessionController, settings: Settings, out: TextIO | None = None) -> None:
        self._controller = controller
        self._settings = settings
        self._out = out or sys.stdout
        self._expanded = False
        self._header = ""
        self._printed = ""
        self._error: str | None = None
        self._session_error: str | None = None

    def draw(self, snapshot: SessionSnapshot) -> None:
        """Print whatever changed since the last snapshot."""
        header = format_header(snapshot)
        if header != self._header:
            self._write(header)
            self._header = header

        if snapshot.session_error and snapshot.session_error != self._session_error:
            self._write(f"! {snapshot.session_error}")
        self._session_error = snapshot.session_error

        transcript = render_transcript(snapshot, self._settings, self._expanded)
        if transcript.startswith(self._printed):
            tail = transcript[len(self._printed) :].lstrip("\n")
            if tail:
                self._write(tail)
        elif snapshot.groups:
            # An earlier group changed (rehomed part, removal): redraw the last one
            self._write("\n".join(render_group(snapshot.groups[-1], self._settings, self._expanded)))
        self._printed = transcript

        if snapshot.error and snapshot.error != self._error:
            self._write(f"! {snapshot.error}")
        self._error = snapshot.error

    async def handle_line(self, line: str) -> bool:
        """Act on one input line. Returns False when the user wants to leave."""
        line = line.strip()
        if not line:
            return True

        command = parse_command(line)
        if command is None:
            self._controller.send(line)
            return True

        name, args = command
        if name == "quit":
            return False
        if name == "stop":
            await self._controller.stop()
            return False
        if name == "model":
            model = ModelRef.parse(args)
            if model is None:
                self._write("usage: /model provider/model")
            else:
                await self._controller.set_model(model.provider_id, model.model_id)
        elif name == "models":
            for option in self._controller.snapshot().models:
                window = f" ({format_tokens(option.context_window)} ctx)" if option.context_window else ""
                self._write(f"  {option.provider_id}/{option.model_id}  {option.model_name}{window}")
        elif name == "expand":
            self._expanded = not self._expanded
            self._printed = ""
            self.draw(self._controller.snapshot())
        elif name == "dismiss":
            self._controller.dismiss_error()
        else:
            self._write(f"unknown command: /{name}")
        return True

    async def run(self) -> None:
        agents = await self._controller.list_agents()
        agent = next((a for a in agents if a.id == self._settings.agent_id), None)
        if agents and agent is None:
            self._write(f"! unknown agent {self._settings.agent_id!r}")
            return
        if agent is not None and not agent.launchable:
            self._write(f"! agent {agent.id} is not installed or cannot run headless")
            return

        unsubscribe = self._controller.subscribe(self.draw)
        try:
            if await self._controller.recover() is None:
                await self._controller.launch()
            while True:
                try:
                    line = await asyncio.to_thread(input)
                except EOFError:
                    break
                if not await self.handle_line(line):
                    break
        finally:
            unsubscribe()

    def _write(self, text: str) -> None:
        print(text, file=self._out, flush=True)


async def main() -> None:
    """Entry point."""
    settings = Settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not settings.project_dir:
        print("Error: AGENTDECK_PROJECT_DIR not set", file=sys.stderr)
        sys.exit(1)

    logger.info("Agent host %s, project %s", settings.host_url, settings.project_dir)
    async with SessionController(settings) as controller:
        await Console(controller, settings).run()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
