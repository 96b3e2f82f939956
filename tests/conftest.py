import threading

import pytest

from clusterctl.ssh.models import ExecutionResult, SSHErrorCategory


class FakeRunner:
    """
    Scripted CommandRunner.

    Responses are looked up by (host, command), then command, then the
    first registered key the command starts with. A response is a
    (stdout, stderr, exit_status) tuple or a callable(host, command)
    returning one. Unknown commands exit 127.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []
        self._lock = threading.Lock()

    def add(self, command, stdout="", stderr="", exit_status=0, host=None):
        key = (host, command) if host else command
        self.responses[key] = (stdout, stderr, exit_status)
        return self

    def _lookup(self, host, command):
        if (host, command) in self.responses:
            return self.responses[(host, command)]
        if command in self.responses:
            return self.responses[command]
        for key, response in self.responses.items():
            if isinstance(key, tuple):
                if key[0] == host and command.startswith(key[1]):
                    return response
            elif command.startswith(key):
                return response
        return ("", f"sh: command not found: {command}", 127)

    def run(self, host, command, cancel=None, timeout=None, input_data=None):
        with self._lock:
            self.calls.append((host, command))
        response = self._lookup(host, command)
        if callable(response):
            response = response(host, command)
        stdout, stderr, exit_status = response
        return ExecutionResult(
            host=host,
            command=command,
            stdout=stdout,
            stderr=stderr,
            exit_status=exit_status,
            error_category=SSHErrorCategory.SUCCESS if exit_status == 0 else SSHErrorCategory.COMMAND_FAILED,
        )

    def commands(self, host=None):
        return [c for h, c in self.calls if host is None or h == host]


@pytest.fixture
def runner():
    return FakeRunner()


IP_ADDR_OUTPUT = """\
1: lo    inet 127.0.0.1/8 scope host lo\\       valid_lft forever preferred_lft forever
2: eth0    inet 192.168.1.10/24 brd 192.168.1.255 scope global eth0\\       valid_lft forever preferred_lft forever
3: docker0    inet 172.17.0.1/16 brd 172.17.255.255 scope global docker0\\       valid_lft forever preferred_lft forever
5: wt0    inet 100.76.202.130/16 brd 100.76.255.255 scope global wt0\\       valid_lft forever preferred_lft forever
"""

DOCKER_LS_OUTPUT = (
    '{"CreatedAt":"2024-01-01","Driver":"bridge","ID":"a1b2c3d4e5f6","Name":"bridge","Scope":"local"}\n'
    '{"CreatedAt":"2024-01-01","Driver":"host","ID":"f6e5d4c3b2a1","Name":"host","Scope":"local"}\n'
)

DOCKER_INSPECT_BRIDGE = '[{"Name":"bridge","IPAM":{"Driver":"default","Config":[{"Subnet":"172.17.0.0/16","Gateway":"172.17.0.1"}]}}]'
DOCKER_INSPECT_HOST = '[{"Name":"host","IPAM":{"Driver":"default","Config":[]}}]'
