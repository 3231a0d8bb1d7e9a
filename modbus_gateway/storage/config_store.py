"""
Configuration Store

File-backed group/key/value persistence in INI format.

The whole file is resident in memory and every mutation rewrites it
(temp file, fsync, atomic rename), so a write is O(total size). That is
fine for the handful of groups a gateway holds; larger fleets need an
append log or an embedded key/value store behind the same interface.
"""

import configparser
import os
from pathlib import Path
from typing import Callable

from ..common.exceptions import GatewayError, InvalidArgsError, StorageError
from ..common.logging_setup import get_service_logger

logger = get_service_logger("storage")

# Keeps configparser from treating a real group as the defaults section
_DEFAULT_SECTION = "__defaults__"

GroupVisitor = Callable[[str, dict[str, str]], None]


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(
        interpolation=None,
        default_section=_DEFAULT_SECTION,
        strict=False,
    )
    # Keys are case-sensitive ("Name", "PollingInterval")
    parser.optionxform = str
    return parser


class ConfigStore:
    """
    One configuration file.

    Groups keep insertion order. In-memory state and the file are
    synchronized after every mutating call returns; when the rewrite fails
    the in-memory state is rolled back and StorageError is raised.
    """

    def __init__(self, path: Path, parser: configparser.ConfigParser, existed: bool):
        self.path = path
        self.existed = existed
        self._parser = parser
        self._closed = False

    @classmethod
    def open(cls, path: str | Path) -> "ConfigStore":
        """
        Open a store, creating the file (and its directory) if absent.

        Args:
            path: File path

        Returns:
            Loaded store; `existed` tells whether the file was already there
        """
        path = Path(path)
        existed = path.exists()
        parser = _new_parser()

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not existed:
                path.touch(mode=0o600)
            with open(path, "r", encoding="utf-8") as f:
                parser.read_file(f)
        except OSError as e:
            raise StorageError(
                f"Unable to open {path}: {e.strerror or e}",
                path=str(path),
                errno=e.errno,
            ) from e
        except configparser.Error as e:
            raise StorageError(f"Malformed store {path}: {e}", path=str(path)) from e

        logger.debug(
            f"Opened store {path} ({len(parser.sections())} groups)",
            extra={"path": str(path), "existed": existed},
        )
        return cls(path, parser, existed)

    def close(self) -> None:
        """Release the store. Later mutations raise StorageError."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def groups(self) -> list[str]:
        return self._parser.sections()

    def has_group(self, group: str) -> bool:
        return self._parser.has_section(group)

    def get_group(self, group: str) -> dict[str, str]:
        """Copy of every key in a group (empty when absent)"""
        if not self._parser.has_section(group):
            return {}
        return dict(self._parser.items(group))

    def read_string(self, group: str, key: str, default: str | None = None) -> str | None:
        return self._parser.get(group, key, fallback=default)

    def read_int(self, group: str, key: str, default: int | None = None) -> int | None:
        """Integer value, or default when missing or not an integer"""
        value = self._parser.get(group, key, fallback=None)
        if value is None:
            return default
        try:
            return int(value, 0)
        except ValueError:
            return default

    def write_string(self, group: str, key: str, value: str) -> None:
        """Insert or update a string value, then rewrite the file"""
        self._check_writable()
        self._validate_name(group, key)

        snapshot = self._snapshot()
        if not self._parser.has_section(group):
            self._parser.add_section(group)
        self._parser.set(group, key, str(value))
        self._save(snapshot)

    def write_int(self, group: str, key: str, value: int) -> None:
        """Insert or update an integer value, then rewrite the file"""
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidArgsError(f"{group}.{key}: integer expected, got {value!r}")
        self.write_string(group, key, str(value))

    def write_group(self, group: str, values: dict[str, str | int]) -> None:
        """Insert or update several keys of one group with a single rewrite"""
        self._check_writable()
        for key in values:
            self._validate_name(group, key)

        snapshot = self._snapshot()
        if not self._parser.has_section(group):
            self._parser.add_section(group)
        for key, value in values.items():
            self._parser.set(group, key, str(value))
        self._save(snapshot)

    def remove_group(self, group: str) -> None:
        """Delete a group. Succeeds without rewriting when it is absent."""
        self._check_writable()

        snapshot = self._snapshot()
        if not self._parser.remove_section(group):
            return
        self._save(snapshot)

    def for_each_group(
        self,
        visitor: GroupVisitor,
        required: tuple[str, ...] = (),
    ) -> int:
        """
        Visit every complete group.

        Groups lacking one of the `required` keys are skipped. A visitor
        raising GatewayError skips that group only. Neither case is fatal.

        Args:
            visitor: Called as visitor(group, values)
            required: Keys a group must carry to be visited

        Returns:
            Number of skipped groups
        """
        skipped = 0

        for group in list(self._parser.sections()):
            values = dict(self._parser.items(group))
            missing = [key for key in required if not values.get(key)]
            if missing:
                skipped += 1
                logger.warning(
                    f"{self.path}: skipping group [{group}], missing {', '.join(missing)}",
                    extra={"path": str(self.path), "group": group},
                )
                continue

            try:
                visitor(group, values)
            except GatewayError as e:
                skipped += 1
                logger.warning(
                    f"{self.path}: skipping group [{group}]: {e}",
                    extra={"path": str(self.path), "group": group},
                )

        return skipped

    def _check_writable(self) -> None:
        if self._closed:
            raise StorageError(f"Store {self.path} is closed", path=str(self.path))

    @staticmethod
    def _validate_name(group: str, key: str) -> None:
        if not group or group == _DEFAULT_SECTION or "]" in group or "\n" in group:
            raise InvalidArgsError(f"Invalid group name: {group!r}")
        if not key or any(c in key for c in "=:[]\n") or key != key.strip():
            raise InvalidArgsError(f"Invalid key name: {key!r}")

    def _snapshot(self) -> dict[str, dict[str, str]]:
        return {group: dict(self._parser.items(group)) for group in self._parser.sections()}

    def _restore(self, snapshot: dict[str, dict[str, str]]) -> None:
        parser = _new_parser()
        parser.read_dict(snapshot)
        self._parser = parser

    def _save(self, snapshot: dict[str, dict[str, str]]) -> None:
        """
        Full synchronous rewrite through a temp file and atomic rename.

        On failure the parser is reset to `snapshot`, the state before the
        mutation being saved.
        """
        temp_path = self.path.with_name(f"{self.path.name}.tmp")

        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                self._parser.write(f)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(self.path)
        except OSError as e:
            self._restore(snapshot)
            temp_path.unlink(missing_ok=True)
            logger.error(
                f"Failed to write {self.path}: {e}",
                extra={"path": str(self.path), "errno": e.errno},
            )
            raise StorageError(
                f"Unable to write {self.path}: {e.strerror or e}",
                path=str(self.path),
                errno=e.errno,
            ) from e
