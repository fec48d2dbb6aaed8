# shipyard/capabilities/agent.py
"""
AI coding agent invoked as a blocking subprocess.

The prompt goes in on stdin; the CLI is asked for JSON output so the result
text and reported cost can be separated. Anything that does not parse as
the expected JSON is returned verbatim.
"""

import json
import logging
import subprocess
from pathlib import Path

from shipyard.capabilities.protocols import Agent, AgentResult
from shipyard.procutil import decode_output

logger = logging.getLogger(__name__)

ROLE_PREAMBLES = {
    "builder": "",
    "planner": "You are planning a change. Do not modify files.\n\n",
    "reviewer": "You are reviewing a change. Do not modify files.\n\n",
}


def parse_agent_output(stdout: str) -> tuple[str, float]:
    """Return (text, cost_usd) from the agent's JSON output, or (stdout, 0.0)."""
    text = stdout.strip()
    if not text.startswith("{"):
        return stdout, 0.0
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return stdout, 0.0
    if not isinstance(data, dict):
        return stdout, 0.0
    result = data.get("result")
    cost = data.get("total_cost_usd") or data.get("cost_usd") or 0.0
    try:
        cost = float(cost)
    except (TypeError, ValueError):
        cost = 0.0
    return (result if isinstance(result, str) else stdout), cost


class ClaudeAgent(Agent):
    """Agent CLI wrapper (prompt on stdin, JSON result on stdout)."""

    def __init__(
        self,
        command: str = "claude",
        timeout_s: int = 3600,
        default_max_turns: int = 25,
        extra_args: list[str] | None = None,
    ) -> None:
        self.command = command
        self.timeout_s = timeout_s
        self.default_max_turns = default_max_turns
        self.extra_args = list(extra_args or [])

    def build_command(self, model: str, max_turns: int) -> list[str]:
        return [
            self.command,
            "--print",
            "--output-format",
            "json",
            "--model",
            model,
            "--max-turns",
            str(max_turns),
            *self.extra_args,
        ]

    def run(
        self,
        prompt: str,
        *,
        model: str,
        cwd: Path,
        max_turns: int | None = None,
        role: str = "builder",
    ) -> AgentResult:
        cmd = self.build_command(model, max_turns or self.default_max_turns)
        full_prompt = ROLE_PREAMBLES.get(role, "") + prompt
        logger.info(f"Invoking agent ({role}, model={model}) in {cwd}")

        try:
            proc = subprocess.run(
                cmd,
                input=full_prompt,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                cwd=cwd,
                timeout=self.timeout_s,
            )
        except FileNotFoundError:
            logger.error(f"Agent command not found: {self.command}")
            return AgentResult(exit_code=127, output=f"{self.command}: command not found")
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Agent call timed out after {self.timeout_s}s")
            partial = decode_output(e.stdout)
            return AgentResult(exit_code=124, output=partial, timed_out=True)

        text, cost = parse_agent_output(proc.stdout)
        if proc.returncode != 0 and proc.stderr:
            text = f"{text}\n{proc.stderr}".strip()
        return AgentResult(exit_code=proc.returncode, output=text, cost_usd=cost)
