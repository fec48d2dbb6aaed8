# shipyard/capabilities/tracker.py
"""
Issue tracker adapters.

FileTracker is a provider-agnostic local tracker: one YAML file per ticket
under <home>/tickets/, and one per pull request under <home>/tickets/prs/.
Adapters for hosted trackers implement the same IssueTracker interface.
"""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from shipyard.capabilities.protocols import IssueTracker
from shipyard.errors import CapabilityError
from shipyard.models.jobs import Ticket
from shipyard.storage.atomic import atomic_write_text
from shipyard.timeutil import parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)


class NullTracker(IssueTracker):
    """No ticket source. Inline-goal runs only."""

    def fetch_ticket(self, number: int) -> Ticket:
        raise CapabilityError(f"No issue tracker configured (cannot fetch #{number})")

    def list_ready(self, label: str) -> list[Ticket]:
        return []

    def comment(self, number: int, body: str) -> None:
        logger.debug(f"Dropping comment for #{number} (no tracker)")

    def create_pr(self, branch: str, base: str, title: str, body: str) -> str:
        raise CapabilityError("No issue tracker configured (cannot open a pull request)")

    def merge_pr(self, pr_url: str) -> None:
        raise CapabilityError("No issue tracker configured (cannot merge)")

    def pr_status(self, pr_url: str) -> str:
        return "unknown"


def _ticket_from_dict(number: int, data: dict[str, Any]) -> Ticket:
    created = data.get("created_at")
    if isinstance(created, datetime):
        created_at = created if created.tzinfo else parse_iso(created.isoformat())
    elif isinstance(created, str):
        created_at = parse_iso(created)
    else:
        created_at = utc_now()
    return Ticket(
        number=number,
        title=str(data.get("title", "")),
        body=str(data.get("body", "")),
        labels=[str(label) for label in data.get("labels", [])],
        created_at=created_at,
        blocked_by=[int(n) for n in data.get("blocked_by", [])],
        blocks=[int(n) for n in data.get("blocks", [])],
        url=data.get("url"),
        state=str(data.get("state", "open")),
    )


class FileTracker(IssueTracker):
    """Tickets and pull requests as YAML files in a directory."""

    def __init__(self, directory: Path) -> None:
        self.dir = Path(directory)

    @property
    def prs_dir(self) -> Path:
        return self.dir / "prs"

    def _ticket_path(self, number: int) -> Path:
        return self.dir / f"{number}.yaml"

    def _load(self, path: Path) -> dict[str, Any]:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except FileNotFoundError as e:
            raise CapabilityError(f"No such ticket file: {path}") from e
        except yaml.YAMLError as e:
            raise CapabilityError(f"Ticket file {path} is not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise CapabilityError(f"Ticket file {path} must contain a mapping")
        return data

    def _save(self, path: Path, data: dict[str, Any]) -> None:
        atomic_write_text(path, yaml.safe_dump(data, default_flow_style=False, sort_keys=False))

    def add_ticket(self, ticket: Ticket) -> None:
        """Write a ticket file (used by operators and tests)."""
        self._save(
            self._ticket_path(ticket.number),
            {
                "title": ticket.title,
                "body": ticket.body,
                "labels": list(ticket.labels),
                "created_at": to_iso(ticket.created_at),
                "blocked_by": list(ticket.blocked_by),
                "blocks": list(ticket.blocks),
                "state": ticket.state,
            },
        )

    def fetch_ticket(self, number: int) -> Ticket:
        return _ticket_from_dict(number, self._load(self._ticket_path(number)))

    def list_ready(self, label: str) -> list[Ticket]:
        if not self.dir.exists():
            return []
        tickets = []
        for path in sorted(self.dir.glob("*.yaml")):
            if not path.stem.isdigit():
                continue
            try:
                ticket = _ticket_from_dict(int(path.stem), self._load(path))
            except CapabilityError as e:
                logger.warning(f"Skipping ticket: {e}")
                continue
            if ticket.state == "open" and label in ticket.labels:
                tickets.append(ticket)
        return tickets

    def comment(self, number: int, body: str) -> None:
        path = self._ticket_path(number)
        data = self._load(path)
        data.setdefault("comments", []).append({"at": to_iso(utc_now()), "body": body})
        self._save(path, data)

    def create_pr(self, branch: str, base: str, title: str, body: str) -> str:
        slug = re.sub(r"[^A-Za-z0-9._-]+", "-", branch).strip("-")
        path = self.prs_dir / f"{slug}.yaml"
        self._save(
            path,
            {
                "branch": branch,
                "base": base,
                "title": title,
                "body": body,
                "state": "open",
                "created_at": to_iso(utc_now()),
            },
        )
        return path.resolve().as_uri()

    def _pr_path(self, pr_url: str) -> Path:
        if not pr_url.startswith("file://"):
            raise CapabilityError(f"Not a local pull request: {pr_url}")
        return Path(pr_url[len("file://") :])

    def merge_pr(self, pr_url: str) -> None:
        path = self._pr_path(pr_url)
        data = self._load(path)
        data["state"] = "merged"
        data["merged_at"] = to_iso(utc_now())
        self._save(path, data)

    def pr_status(self, pr_url: str) -> str:
        return str(self._load(self._pr_path(pr_url)).get("state", "unknown"))
