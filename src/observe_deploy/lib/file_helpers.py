import grp
import os
import pwd
import shutil
import tempfile
from datetime import date
from pathlib import Path

import yaml

from observe_deploy.errors import ContentValidationError, TransientToolError
from observe_deploy.lib.linux_helpers import DEFAULT_FILE_MODE
from observe_deploy.lib.model_helpers import octal_mode

BACKUP_SUFFIX = ".backup-"


def validate_yaml(content: str | bytes, source: str) -> None:
    """Confirm that the content parses as YAML.

    :param content: The file contents to check.
    :type content: str | bytes

    :param source: A human readable name for the content used in the error message.
    :type source: str

    :raises ContentValidationError: If the content is not well-formed YAML.
    """
    try:
        yaml.safe_load(content)
    except yaml.YAMLError as exc:
        msg = f"{source} is not valid YAML: {exc}"
        raise ContentValidationError(msg) from exc


def _user_id(owner: str) -> int:
    try:
        return pwd.getpwnam(owner).pw_uid
    except KeyError:
        msg = f"Unknown user {owner!r}"
        raise TransientToolError(msg) from None


def _group_id(group: str) -> int:
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError:
        msg = f"Unknown group {group!r}"
        raise TransientToolError(msg) from None


def _metadata_matches(
    path: Path, owner: str | None, group: str | None, mode: str | None
) -> bool:
    # Ids are compared numerically, files may be owned by ids without a name.
    stat = path.stat()
    if mode is not None and (stat.st_mode & 0o7777) != octal_mode(mode):
        return False
    if owner is not None and stat.st_uid != _user_id(owner):
        return False
    return group is None or stat.st_gid == _group_id(group)


def _copy_metadata(source: Path, target: Path) -> None:
    shutil.copymode(source, target)
    stat = source.stat()
    if os.geteuid() == 0:
        os.chown(target, stat.st_uid, stat.st_gid)


def apply_metadata(
    path: Path,
    owner: str | None = None,
    group: str | None = None,
    mode: str | None = None,
) -> bool:
    """Set owner, group and mode on a path. Returns True when anything changed."""
    if _metadata_matches(path, owner, group, mode):
        return False
    if owner is not None or group is not None:
        shutil.chown(path, user=owner, group=group)
    if mode is not None:
        path.chmod(octal_mode(mode))
    return True


def ensure_directory(
    path: Path,
    owner: str | None = None,
    group: str | None = None,
    mode: str | None = None,
) -> bool:
    """Create a directory (and parents) if needed and correct its metadata.

    Returns True when the directory was created or its metadata was changed.
    """
    created = False
    if not path.is_dir():
        path.mkdir(parents=True, exist_ok=True)
        created = True
    return apply_metadata(path, owner, group, mode) or created


def atomic_write(
    dest: Path,
    content: bytes,
    owner: str | None = None,
    group: str | None = None,
    mode: str | None = None,
) -> bool:
    """Place content at dest so that dest is either untouched or fully replaced.

    The content is written to a temporary file in the destination directory, given
    its final ownership and permissions and then renamed over the destination.

    :returns: True if the content or the metadata of dest changed.

    :rtype: bool
    """
    if dest.is_file() and dest.read_bytes() == content:
        return apply_metadata(dest, owner, group, mode)
    handle, temp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
    temp_path = Path(temp_name)
    try:
        with os.fdopen(handle, "wb") as temp_file:
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        # Unspecified metadata is carried over from the file being replaced.
        if dest.is_file():
            _copy_metadata(dest, temp_path)
        else:
            temp_path.chmod(octal_mode(DEFAULT_FILE_MODE))
        apply_metadata(temp_path, owner, group, mode)
        temp_path.replace(dest)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    return True


def backup_path(path: Path, on: date) -> Path:
    return path.with_name(f"{path.name}{BACKUP_SUFFIX}{on.isoformat()}")
