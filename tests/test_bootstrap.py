import socket

import paramiko
import pytest

from conftest import FakeSessionFactory, RecordingProvider
from stackforge.config.settings import EngineSettings
from stackforge.core.engine import ProvisioningEngine
from stackforge.core.errors import (
    AuthenticationError,
    BootstrapConnectionError,
    BootstrapExecutionError,
)
from stackforge.core.models import ConnectionDescriptor, Declaration, Instance, InstanceStatus
from stackforge.execution.bootstrap import BootstrapDriver, BootstrapStep
from stackforge.execution.remote import ParamikoSessionFactory
from stackforge.expressions.context import BindingContext
from stackforge.providers.base import ProviderRegistry

DESCRIPTOR = ConnectionDescriptor(host="10.1.0.5", user="ubuntu", private_key="~/.ssh/id_rsa")
INSTANCE = Instance(declaration=Declaration(type="server", name="web"), index=None, context=BindingContext())


def driver_for(factory, attempts=5, base=1.0, cap=30.0):
    sleeps = []
    settings = EngineSettings(connect_attempts=attempts, backoff_base=base, backoff_max=cap)
    return BootstrapDriver(factory, settings, sleep=sleeps.append), sleeps


def test_actions_run_in_declared_order():
    factory = FakeSessionFactory()
    driver, _ = driver_for(factory)
    steps = [
        BootstrapStep("upload", source="./setup.sh", destination="/tmp/setup.sh"),
        BootstrapStep("commands", commands=["chmod +x /tmp/setup.sh", "/tmp/setup.sh"]),
        BootstrapStep("upload", source="./app.conf", destination="/etc/app.conf"),
    ]
    assert driver.run_bootstrap(INSTANCE, steps, DESCRIPTOR) == []
    assert factory.log == [
        ("upload", "./setup.sh", "/tmp/setup.sh"),
        ("run", "chmod +x /tmp/setup.sh"),
        ("run", "/tmp/setup.sh"),
        ("upload", "./app.conf", "/etc/app.conf"),
        ("close",),
    ]


def test_non_zero_exit_halts_remaining_actions():
    factory = FakeSessionFactory(exit_codes={"false": 1})
    driver, _ = driver_for(factory)
    steps = [
        BootstrapStep("commands", commands=["true", "false", "never-run"]),
        BootstrapStep("upload", source="a", destination="b"),
    ]
    with pytest.raises(BootstrapExecutionError) as info:
        driver.run_bootstrap(INSTANCE, steps, DESCRIPTOR)

    assert info.value.exit_code == 1
    assert info.value.command == "false"
    assert factory.log == [("run", "true"), ("run", "false"), ("close",)]
    assert factory.sessions[0].closed


def test_on_failure_continue_tolerates_the_action():
    factory = FakeSessionFactory(exit_codes={"optional": 3}, failing_uploads={"missing.txt"})
    driver, _ = driver_for(factory)
    steps = [
        BootstrapStep("upload", on_failure="continue", source="missing.txt", destination="/tmp/x"),
        BootstrapStep("commands", on_failure="continue", commands=["optional", "skipped"]),
        BootstrapStep("commands", commands=["final"]),
    ]
    tolerated = driver.run_bootstrap(INSTANCE, steps, DESCRIPTOR)

    assert len(tolerated) == 2
    # The batch still stops at its first failing command
    assert ("run", "skipped") not in factory.log
    assert ("run", "final") in factory.log


def test_connection_retries_up_to_ceiling():
    factory = FakeSessionFactory(failures=[BootstrapConnectionError("refused")] * 10)
    driver, sleeps = driver_for(factory, attempts=4)

    with pytest.raises(BootstrapConnectionError) as info:
        driver.run_bootstrap(INSTANCE, [BootstrapStep("commands", commands=["true"])], DESCRIPTOR)

    assert factory.attempts == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert "after 4 attempt(s)" in str(info.value)
    assert factory.log == []


def test_connection_recovers_after_transient_failures():
    factory = FakeSessionFactory(failures=[BootstrapConnectionError("timed out")] * 2)
    driver, sleeps = driver_for(factory, attempts=5)
    driver.run_bootstrap(INSTANCE, [BootstrapStep("commands", commands=["uptime"])], DESCRIPTOR)

    assert factory.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert factory.log == [("run", "uptime"), ("close",)]


def test_authentication_failure_is_not_retried():
    factory = FakeSessionFactory(failures=[AuthenticationError("bad key")])
    driver, sleeps = driver_for(factory, attempts=5)

    with pytest.raises(AuthenticationError):
        driver.run_bootstrap(INSTANCE, [BootstrapStep("commands", commands=["true"])], DESCRIPTOR)
    assert factory.attempts == 1
    assert sleeps == []


def test_backoff_is_bounded():
    driver, _ = driver_for(FakeSessionFactory(), base=1.0, cap=3.0)
    assert [driver.backoff(n) for n in range(1, 6)] == [1.0, 2.0, 3.0, 3.0, 3.0]


def test_session_released_when_action_raises():
    class ExplodingFactory(FakeSessionFactory):
        def connect(self, descriptor):
            session = super().connect(descriptor)

            def broken_upload(local_path, remote_path):
                raise BootstrapExecutionError("disk full")

            session.upload = broken_upload
            return session

    factory = ExplodingFactory()
    driver, _ = driver_for(factory)
    with pytest.raises(BootstrapExecutionError):
        driver.run_bootstrap(INSTANCE, [BootstrapStep("upload", source="a", destination="b")], DESCRIPTOR)
    assert factory.sessions[0].closed


BOOTSTRAP_YAML = """
variable:
  script: {default: ./setup.sh}
resource:
  server:
    web:
      attributes: {size: small}
      connection:
        type: ssh
        user: ubuntu
        private_key: ~/.ssh/id_rsa
        host: '${self.public_ip}'
      bootstrap:
        - file: {source: '${var.script}', destination: /tmp/setup.sh}
        - commands: ['chmod +x /tmp/setup.sh', '/tmp/setup.sh ${self.id}']
  app:
    api:
      depends_on: [server.web]
"""


def engine_with(sessions, provider):
    return ProvisioningEngine(registry=ProviderRegistry(default=provider), session_factory=sessions,
                              settings=EngineSettings(backoff_base=0.0))


def test_bootstrap_runs_after_apply_against_own_address(planner):
    sessions = FakeSessionFactory()
    provider = RecordingProvider(extra={"public_ip": "10.1.0.5"})
    result = engine_with(sessions, provider).apply(planner(BOOTSTRAP_YAML))

    web = result.results["server.web"]
    assert result.success
    assert web.bootstrapped and web.materialized
    assert sessions.descriptors[0].host == "10.1.0.5"
    assert sessions.descriptors[0].user == "ubuntu"
    assert sessions.log[-2] == ("run", f"/tmp/setup.sh {web.identity}")


def test_bootstrap_failure_fails_instance_and_blocks_dependents(planner):
    sessions = FakeSessionFactory(exit_codes={"chmod +x /tmp/setup.sh": 126})
    result = engine_with(sessions, RecordingProvider(extra={"public_ip": "10.1.0.5"})).apply(
        planner(BOOTSTRAP_YAML))

    web = result.results["server.web"]
    assert web.status == InstanceStatus.FAILED
    assert web.materialized and not web.bootstrapped
    assert "126" in web.error
    assert result.results["app.api"].status == InstanceStatus.BLOCKED
    assert not result.success


def test_unexpected_session_error_fails_only_that_instance(planner):
    sessions = FakeSessionFactory(failures=[RuntimeError("agent crashed")])
    result = engine_with(sessions, RecordingProvider(extra={"public_ip": "10.1.0.5"})).apply(
        planner(BOOTSTRAP_YAML))

    web = result.results["server.web"]
    assert web.status == InstanceStatus.FAILED
    assert web.materialized and not web.bootstrapped
    assert "agent crashed" in web.error
    assert result.results["app.api"].status == InstanceStatus.BLOCKED
    assert sessions.attempts == 1


def test_reapply_after_bootstrap_failure_recreates(planner):
    sessions = FakeSessionFactory(exit_codes={"chmod +x /tmp/setup.sh": 126})
    provider = RecordingProvider(extra={"public_ip": "10.1.0.5"})
    engine = engine_with(sessions, provider)
    engine.apply(planner(BOOTSTRAP_YAML))

    sessions.exit_codes.clear()
    second = engine.apply(planner(BOOTSTRAP_YAML))
    assert second.success
    assert not second.results["server.web"].noop
    assert second.results["server.web"].bootstrapped


# --- paramiko session factory -------------------------------------------


class FakeChannel:
    def __init__(self, status):
        self.status = status

    def recv_exit_status(self):
        return self.status


class FakeStream:
    def __init__(self, data, status):
        self.data = data
        self.channel = FakeChannel(status)

    def read(self):
        return self.data


def fake_client(error=None, status=0):
    clients = []

    class FakeSSHClient:
        def __init__(self):
            self.closed = False
            self.connect_kwargs = None
            clients.append(self)

        def set_missing_host_key_policy(self, policy):
            pass

        def connect(self, host, **kwargs):
            if error is not None:
                raise error
            self.connect_kwargs = dict(kwargs, host=host)

        def exec_command(self, command, timeout=None):
            return None, FakeStream(b"out\n", status), FakeStream(b"err\n", status)

        def close(self):
            self.closed = True

    return FakeSSHClient, clients


@pytest.mark.parametrize("error, expected", [
    (paramiko.AuthenticationException("denied"), AuthenticationError),
    (paramiko.ssh_exception.NoValidConnectionsError({("10.1.0.5", 22): ConnectionRefusedError()}),
     BootstrapConnectionError),
    (socket.timeout("timed out"), BootstrapConnectionError),
    (ConnectionRefusedError("refused"), BootstrapConnectionError),
    (paramiko.SSHException("Error reading SSH protocol banner"), BootstrapConnectionError),
])
def test_paramiko_errors_are_classified(monkeypatch, error, expected):
    client_class, clients = fake_client(error=error)
    monkeypatch.setattr(paramiko, "SSHClient", client_class)

    with pytest.raises(expected):
        ParamikoSessionFactory().connect(DESCRIPTOR)
    assert clients[0].closed


def test_paramiko_session_runs_commands(monkeypatch):
    client_class, clients = fake_client(status=2)
    monkeypatch.setattr(paramiko, "SSHClient", client_class)

    session = ParamikoSessionFactory().connect(DESCRIPTOR)
    exit_code, output = session.run("ls /nope")
    session.close()

    assert exit_code == 2
    assert output == "out\nerr\n"
    assert clients[0].connect_kwargs["username"] == "ubuntu"
    assert clients[0].connect_kwargs["port"] == 22
    assert clients[0].closed
