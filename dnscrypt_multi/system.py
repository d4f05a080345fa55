from __future__ import annotations

import grp
import logging
import os
import pwd
import shutil
from pathlib import Path

from .errors import SystemSetupError

LOGGER = logging.getLogger("Multi.System")


def locate_executable(name: str) -> Path:
    found = shutil.which(name)
    if found is None:
        raise SystemSetupError(
            f"Unable to find {name}. Please specify its location manually."
        )
    return Path(found)


def is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK) and os.access(path, os.R_OK)


def prepare_dir(directory: Path, *, owner: str | None = None) -> None:
    """Create ``directory`` if needed and optionally hand it to ``USER[:GROUP]``."""

    if not directory.exists():
        LOGGER.info("Creating directory %s.", directory)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise SystemSetupError(f"Failed to create directory {directory}: {exc}") from exc
    elif not directory.is_dir():
        raise SystemSetupError(f"Object exists but is not a directory: {directory}")

    if owner:
        user, _, group = owner.partition(":")
        LOGGER.info("Changing owner of %s to %s.", directory, owner)
        try:
            shutil.chown(directory, user=user or None, group=group or None)
        except (OSError, LookupError) as exc:
            raise SystemSetupError(
                f"Failed to change ownership of directory {directory} to {owner}: {exc}"
            ) from exc


def _resolve_gid(group: str) -> int:
    if group.isdigit():
        return int(group)
    return grp.getgrnam(group).gr_gid


def _resolve_uid(user: str) -> int:
    if user.isdigit():
        return int(user)
    return pwd.getpwnam(user).pw_uid


def drop_privileges(*, user: str | None = None, group: str | None = None) -> None:
    """Switch to ``group`` and then ``user``; either may be a name or an id."""

    if group:
        try:
            os.setgid(_resolve_gid(group))
        except (OSError, KeyError) as exc:
            raise SystemSetupError(f"Failed to change group or GID to {group}: {exc}") from exc
        LOGGER.info("Changed group to %s.", group)

    if user:
        try:
            os.setuid(_resolve_uid(user))
        except (OSError, KeyError) as exc:
            raise SystemSetupError(f"Failed to change user or UID to {user}: {exc}") from exc
        LOGGER.info("Changed user to %s.", user)
