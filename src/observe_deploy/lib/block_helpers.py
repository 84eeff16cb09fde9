DEFAULT_MARKER = "# {mark} OBSERVE DEPLOY MANAGED BLOCK"


def _marker_lines(marker: str) -> tuple[str, str]:
    return marker.replace("{mark}", "BEGIN"), marker.replace("{mark}", "END")


def find_block(lines: list[str], marker: str) -> tuple[int, int] | None:
    """Locate the first complete BEGIN/END pair for marker.

    :returns: The indices of the BEGIN and END lines, or None if the file does not
        contain a complete block.
    """
    begin, end = _marker_lines(marker)
    stripped = [line.rstrip() for line in lines]
    if begin not in stripped:
        return None
    begin_index = stripped.index(begin)
    try:
        end_index = stripped.index(end, begin_index + 1)
    except ValueError:
        return None
    return begin_index, end_index


def apply_block(
    text: str,
    block: str,
    marker: str = DEFAULT_MARKER,
    present: bool = True,  # noqa: FBT001, FBT002
) -> str:
    """Insert, replace or remove a markered block of lines in text.

    When a block delimited by the BEGIN and END forms of `marker` already exists it
    is replaced wholesale, otherwise the block is appended to the end of the text.
    Re-applying the same block to the result returns identical text.

    :param text: The current file contents.
    :type text: str

    :param block: The lines to place between the markers.
    :type block: str

    :param marker: The marker line template, `{mark}` is substituted with BEGIN and
        END.
    :type marker: str

    :param present: Remove the block instead when False.
    :type present: bool

    :rtype: str
    """
    lines = text.splitlines()
    begin, end = _marker_lines(marker)
    managed = [begin, *block.rstrip("\n").splitlines(), end] if present else []
    location = find_block(lines, marker)
    if location:
        begin_index, end_index = location
        lines[begin_index : end_index + 1] = managed
    else:
        lines.extend(managed)
    if not lines:
        return ""
    return "\n".join(lines) + "\n"
