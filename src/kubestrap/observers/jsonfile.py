from __future__ import annotations
import json
from pathlib import Path
from .events import BaseEvent


class JsonFileObserver:
    """Appends one JSON line per event to <logs_dir>/<run_id>.events.jsonl."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def for_run(cls, logs_dir: Path, run_id: str) -> "JsonFileObserver":
        return cls(Path(logs_dir) / f"{run_id}.events.jsonl")

    def notify(self, event: BaseEvent) -> None:
        line = json.dumps({"type": event.__class__.__name__, **event.dict()}, default=str)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
