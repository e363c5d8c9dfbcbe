from typing import Dict, Iterable, List

from localproxy.errors import OrchestratorCommandError

LEGEND = "An asterisk (*) denotes that a network service is disabled."

_KIND_NAMES = ("webproxy", "securewebproxy", "ftpproxy", "socksfirewallproxy")


class FakeNetworkSetup:
    """
    In-memory stand-in for ``networksetup``.

    Keeps per-service, per-kind proxy state and answers the ``-get``/``-set``
    commands the orchestrator issues. Commands that touch a service listed in
    ``fail_on`` raise ``OrchestratorCommandError``, as a real failure would.
    """

    def __init__(
        self,
        services: Iterable[str] = ("Wi-Fi", "Thunderbolt Ethernet"),
        disabled: Iterable[str] = ("Bluetooth PAN",),
        fail_on: Iterable[str] = (),
        list_fails: bool = False,
    ):
        self.services: List[str] = list(services)
        self.disabled: List[str] = list(disabled)
        self.fail_on = set(fail_on)
        self.list_fails = list_fails
        self.calls: List[List[str]] = []
        self.state: Dict[str, Dict[str, dict]] = {
            name: {kind: self._blank() for kind in _KIND_NAMES}
            for name in self.services + self.disabled
        }

    @staticmethod
    def _blank() -> dict:
        return {"enabled": False, "server": "", "port": 0, "authenticated": False}

    def configure(
        self,
        service: str,
        kind: str,
        enabled: bool,
        server: str = "",
        port: int = 0,
        authenticated: bool = False,
    ) -> None:
        self.state[service][kind] = {
            "enabled": enabled,
            "server": server,
            "port": port,
            "authenticated": authenticated,
        }

    def proxy(self, service: str, kind: str) -> dict:
        return self.state[service][kind]

    def _fail(self, args, stderr: str = "** Error: fake failure") -> None:
        raise OrchestratorCommandError(["networksetup", *args], 1, stderr)

    async def run(self, *args: str) -> str:
        self.calls.append(list(args))
        command = args[0]

        if command == "-listallnetworkservices":
            if self.list_fails:
                self._fail(args, "permission denied")
            lines = [LEGEND, *self.services, *(f"*{name}" for name in self.disabled)]
            return "\n".join(lines) + "\n"

        service = args[1]
        if service in self.fail_on or service not in self.state:
            self._fail(args)

        if command.startswith("-get"):
            kind = command[len("-get"):]
            entry = self.state[service][kind]
            return (
                f"Enabled: {'Yes' if entry['enabled'] else 'No'}\n"
                f"Server: {entry['server']}\n"
                f"Port: {entry['port']}\n"
                f"Authenticated Proxy Enabled: {1 if entry['authenticated'] else 0}\n"
            )

        if command.endswith("state"):
            kind = command[len("-set"):-len("state")]
            self.state[service][kind]["enabled"] = args[2] == "on"
            return ""

        kind = command[len("-set"):]
        self.state[service][kind]["server"] = args[2]
        self.state[service][kind]["port"] = int(args[3])
        return ""

    def commands_for(self, service: str) -> List[List[str]]:
        return [call for call in self.calls if len(call) > 1 and call[1] == service]
