"""A Rich-powered console overview of videos and pending notifications."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from rich import box
from rich.columns import Columns
from rich.console import Console, Group
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from ..services.counters import JobCounter
from ..services.mailbox import MailboxStore
from ..services.storage import VideoProgress, VideoRecord, VideoRepository


PROGRESS_STYLES: Dict[VideoProgress, str] = {
    VideoProgress.QUEUED: "dim",
    VideoProgress.INITIALIZING: "white",
    VideoProgress.UPLOADING: "cyan",
    VideoProgress.PROCESSING: "yellow",
    VideoProgress.COMPLETED: "green",
    VideoProgress.FAILED: "bold red",
}


@dataclass
class OverviewSnapshot:
    videos: List[VideoRecord]
    progress_totals: Dict[VideoProgress, int]
    pending_mailboxes: List[Tuple[str, int]]
    active_jobs: int

    @property
    def pending_messages(self) -> int:
        return sum(count for _, count in self.pending_mailboxes)


def collect_overview(
    repository: VideoRepository,
    mailbox: MailboxStore,
    counter: JobCounter,
) -> OverviewSnapshot:
    """Aggregate store data into a snapshot for the console."""

    return OverviewSnapshot(
        videos=repository.list_videos(),
        progress_totals=repository.count_by_progress(),
        pending_mailboxes=mailbox.pending_users(),
        active_jobs=counter.value(),
    )


class OverviewUI:
    """Render video processing state and mailbox backlog using Rich widgets."""

    def __init__(
        self,
        repository: VideoRepository,
        mailbox: MailboxStore,
        counter: JobCounter,
        *,
        console: Optional[Console] = None,
    ) -> None:
        self._repository = repository
        self._mailbox = mailbox
        self._counter = counter
        self._console = console or Console()

    def run(self) -> OverviewSnapshot:
        snapshot = collect_overview(self._repository, self._mailbox, self._counter)
        console = self._console

        console.rule("[bold magenta]Course Relay Overview")

        if not snapshot.videos and not snapshot.pending_mailboxes:
            console.print(
                Panel(
                    "No videos have been registered yet.\n"
                    "Use [bold]python run.py register-video[/bold] to add one.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return snapshot

        videos_panel = Panel(
            self._build_video_table(snapshot.videos),
            title="Videos",
            border_style="cyan",
            box=box.ROUNDED,
        )
        console.print(Columns([videos_panel, self._build_stats_panel(snapshot)], expand=True))
        return snapshot

    @staticmethod
    def _build_video_table(videos: List[VideoRecord]) -> Table:
        table = Table(box=box.SIMPLE_HEAD, expand=True)
        table.add_column("ID", justify="right", style="dim")
        table.add_column("Owner")
        table.add_column("Object key", overflow="fold")
        table.add_column("Progress")
        for video in videos:
            progress = Text(video.progress.value, style=PROGRESS_STYLES.get(video.progress, "white"))
            if video.error:
                progress.append(f"\n{video.error}", style="dim")
            table.add_row(str(video.id), video.owner or "-", video.object_key, progress)
        return table

    @staticmethod
    def _build_stats_panel(snapshot: OverviewSnapshot) -> Panel:
        metrics = Table.grid(expand=True, padding=(0, 1))
        metrics.add_column(style="dim")
        metrics.add_column(justify="right", style="bold")
        for state in VideoProgress:
            metrics.add_row(state.value.capitalize(), str(snapshot.progress_totals.get(state, 0)))
        metrics.add_row("Active jobs", str(snapshot.active_jobs))

        mailboxes = Table.grid(expand=True, padding=(0, 1))
        mailboxes.add_column(style="dim")
        mailboxes.add_column(justify="right", style="bold")
        if snapshot.pending_mailboxes:
            for user_id, count in snapshot.pending_mailboxes:
                mailboxes.add_row(user_id, str(count))
        else:
            mailboxes.add_row("No pending notifications", "")

        body = Group(metrics, Rule(title="Mailboxes", style="magenta"), mailboxes)
        return Panel(body, title="At a glance", border_style="magenta", box=box.ROUNDED)


__all__ = ["OverviewSnapshot", "OverviewUI", "collect_overview"]
