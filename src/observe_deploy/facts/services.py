from pyinfra.api import FactBase


class ServiceActiveState(FactBase):
    """The ActiveState systemd reports for a unit (active, inactive, failed, ...)."""

    def command(self, service):
        return f"systemctl show --property=ActiveState --value {service}"

    def process(self, output):
        return output[0].strip()

    @staticmethod
    def default():
        return "unknown"


class ServiceEnabled(FactBase):
    def command(self, service):
        return f"systemctl is-enabled {service} 2>/dev/null || true"

    def process(self, output):
        return output[0].strip() == "enabled"

    @staticmethod
    def default():
        return False
