"""Centralised path constants, parameterized by root directory.

Usage:
    paths = Paths(root=Path("data"))          # production
    paths = Paths(root=tmp_path / "data")     # tests
"""

from pathlib import Path


class Paths:
    """All companion data paths derived from a single root directory."""

    def __init__(self, root: Path | str = Path("data")) -> None:
        self.root = Path(root)

    # ── Documents ───────────────────────────────────────────────────

    @property
    def chat_history(self) -> Path:
        return self.root / "chat_history.json"

    @property
    def user_memories(self) -> Path:
        return self.root / "user_memories.json"

    # ── Config ──────────────────────────────────────────────────────

    @property
    def config_dir(self) -> Path:
        return self.root / "config"

    @property
    def settings_file(self) -> Path:
        return self.config_dir / "settings.json"

    # ── Helpers ─────────────────────────────────────────────────────

    def ensure_dirs(self) -> None:
        """Create the data and config directories."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
