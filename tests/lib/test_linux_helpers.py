import pytest

from observe_deploy.lib.linux_helpers import (
    DEBIAN,
    RED_HAT,
    linux_family,
    parse_os_release,
)
from observe_deploy.lib.model_helpers import octal_mode


@pytest.mark.parametrize(
    ("name", "family"),
    [
        ("ubuntu", DEBIAN),
        ("Debian", DEBIAN),
        ("rhel", RED_HAT),
        ("Fedora", RED_HAT),
    ],
)
def test_linux_family(name, family):
    assert linux_family(name) == family


def test_unknown_family_raises():
    with pytest.raises(KeyError):
        linux_family("arch")


def test_parse_os_release():
    lines = [
        "# comment",
        'PRETTY_NAME="Ubuntu 24.04.1 LTS"',
        "",
        "ID=ubuntu",
        "VERSION_ID='24.04'",
        "garbage",
    ]

    assert parse_os_release(lines) == {
        "PRETTY_NAME": "Ubuntu 24.04.1 LTS",
        "ID": "ubuntu",
        "VERSION_ID": "24.04",
    }


@pytest.mark.parametrize(("mode", "value"), [("0644", 0o644), (755, 0o755)])
def test_octal_mode(mode, value):
    assert octal_mode(mode) == value
