"""Task registry: task identity prefixes seen in the latest successful cycle."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

from .errors import RegistryStateError

STATE_VERSION = 1


class TaskRegistry:
    """Deduplicated, first-seen ordered set of task identity prefixes.

    Contents are replaced wholesale by ``rebuild``; readers always see one
    complete generation. With a ``state_file`` the registry survives process
    restarts, which is what lets a one-shot plugin run advertise graphs for
    tasks seen by the previous run.
    """

    def __init__(
        self,
        state_file: Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.state_file = Path(state_file) if state_file is not None else None
        self.logger = logger or logging.getLogger(f"{__name__}.{self.__class__.__name__}")
        self._prefixes: tuple[str, ...] = ()

    def current_prefixes(self) -> tuple[str, ...]:
        """Prefixes from the last rebuild, empty before the first one."""
        return self._prefixes

    def rebuild(self, prefixes: Iterable[str]) -> None:
        """Replace the contents with ``prefixes``, dropping exact duplicates."""
        self._prefixes = tuple(dict.fromkeys(prefixes))
        if self.state_file is not None:
            self.save()

    def __len__(self) -> int:
        return len(self._prefixes)

    def __contains__(self, prefix: object) -> bool:
        return prefix in self._prefixes

    def load(self) -> tuple[str, ...]:
        """Load prefixes from the state file; a missing file means an empty registry."""
        if self.state_file is None or not self.state_file.exists():
            self._prefixes = ()
            return self._prefixes

        try:
            with self.state_file.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryStateError(
                f"Failed to load task registry from {self.state_file}"
            ) from exc

        prefixes = payload.get("prefixes") if isinstance(payload, dict) else None
        if not isinstance(prefixes, list) or not all(isinstance(p, str) for p in prefixes):
            raise RegistryStateError(f"Malformed task registry in {self.state_file}")

        self._prefixes = tuple(dict.fromkeys(prefixes))
        self.logger.debug(f"Loaded {len(self._prefixes)} task prefixes from {self.state_file}")
        return self._prefixes

    def save(self) -> None:
        """Persist the registry atomically (temp file + replace)."""
        if self.state_file is None:
            return
        payload = {"version": STATE_VERSION, "prefixes": list(self._prefixes)}
        temp_path = self.state_file.with_suffix(".tmp")
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            temp_path.replace(self.state_file)
        except OSError as exc:
            raise RegistryStateError(
                f"Failed to write task registry to {self.state_file}"
            ) from exc
