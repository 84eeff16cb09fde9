from pyinfra.api import FactBase

from observe_deploy.lib.linux_helpers import parse_os_release


class OsRelease(FactBase):
    command = "cat /etc/os-release"

    def process(self, output):
        return parse_os_release(output)

    @staticmethod
    def default():
        return {}
