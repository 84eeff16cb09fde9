RED_HAT = "RedHat"
DEBIAN = "Debian"

DEFAULT_DIRECTORY_MODE = "0755"
DEFAULT_FILE_MODE = "0644"


def linux_family(distribution_name: str) -> str:
    """Map a linux distribution to the family that it belongs to (e.g. Debian, etc.).

    :param distribution_name: The name of the linux distribution (e.g. Ubuntu, Debian,
        Fedora, etc.) as reported by the `ID` or `ID_LIKE` keys of /etc/os-release.
        Matching is case insensitive.
    :type distribution_name: str

    :raises KeyError: If the distribution is not a known member of any family.

    :returns: The family that the linux distribution belongs to (e.g. Debian, RedHat,
              etc.)

    :rtype: str
    """
    return {
        "ubuntu": DEBIAN,
        "debian": DEBIAN,
        "redhat": RED_HAT,
        "rhel": RED_HAT,
        "fedora": RED_HAT,
        "centos": RED_HAT,
    }[distribution_name.lower()]


def parse_os_release(lines: list[str]) -> dict[str, str]:
    """Parse the KEY=value lines of /etc/os-release into a dictionary.

    Values may be wrapped in single or double quotes, blank lines and comments are
    skipped.
    """
    release = {}
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", maxsplit=1)
        release[key.strip()] = value.strip().strip("'\"")
    return release
