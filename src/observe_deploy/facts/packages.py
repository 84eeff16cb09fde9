from pyinfra.api import FactBase

INSTALLED_STATUS = "install ok installed"


class DebPackageVersion(FactBase):
    """The installed version of a Debian package, or None when it is not installed."""

    def command(self, package):
        return (
            f"dpkg-query --show --showformat='${{Status}} ${{Version}}' {package}"
            " 2>/dev/null || true"
        )

    def process(self, output):
        status = " ".join(output).strip()
        if not status.startswith(INSTALLED_STATUS):
            return None
        return status.removeprefix(INSTALLED_STATUS).strip() or None


class HeldPackages(FactBase):
    """Names of packages marked as held by apt-mark."""

    command = "apt-mark showhold"

    def process(self, output):
        return {line.strip() for line in output if line.strip()}

    @staticmethod
    def default():
        return set()
