"""
Shared doubles for the stackforge tests: a recording provider, a provider
that always fails, and an in-memory remote session factory.
"""

import threading
from typing import Any, Dict, List, Optional

import pytest

from stackforge.config.loader import ConfigLoader, resolve_variables
from stackforge.core.errors import BootstrapExecutionError, MaterializationError
from stackforge.execution.remote import RemoteSession, SessionFactory
from stackforge.planning.pipeline import PlanningPipeline
from stackforge.providers.base import Provider

# net -> sub (1 or 2 instances) -> srv, as used throughout the scenario tests
STACK_YAML = """
variable:
  env: {default: dev, description: deployment tier}
locals:
  sub_count: '${var.env == "prod" ? 2 : 1}'
resource:
  network:
    net:
      attributes: {cidr: 10.0.0.0/16}
  subnet:
    sub:
      count: '${local.sub_count}'
      attributes:
        network_id: '${network.net.id}'
        cidr: '${format("10.0.%d.0/24", count.index)}'
  server:
    srv:
      attributes:
        subnet_id: '${subnet.sub[0].id}'
output:
  ids: {value: '${subnet.sub[*].id}'}
  net_id: {value: '${network.net.id}'}
  srv_id: {value: '${server.srv.id}'}
"""


class RecordingProvider(Provider):
    """Hands out sequential identities and remembers every call, thread-safely."""

    def __init__(self, prefix: str = "res", extra: Optional[Dict[str, Any]] = None):
        self.prefix = prefix
        self.extra = extra or {}
        self.created: List[Dict[str, Any]] = []
        self.reads: List[str] = []
        self._store: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create(self, attributes):
        with self._lock:
            identity = f"{self.prefix}-{len(self.created) + 1}"
            self.created.append(dict(attributes))
            outputs = dict(attributes)
            outputs.update(self.extra)
            self._store[identity] = outputs
            return identity, dict(outputs)

    def read(self, identity):
        with self._lock:
            self.reads.append(identity)
            return dict(self._store[identity])


class FailingProvider(Provider):

    def __init__(self, message: str = "quota exceeded"):
        self.message = message
        self.calls = 0

    def create(self, attributes):
        self.calls += 1
        raise MaterializationError(self.message)

    def read(self, identity):
        raise MaterializationError(self.message)


class FakeSession(RemoteSession):

    def __init__(self, log: List[tuple], exit_codes: Dict[str, int], failing_uploads: set):
        self.log = log
        self.exit_codes = exit_codes
        self.failing_uploads = failing_uploads
        self.closed = False

    def upload(self, local_path, remote_path):
        self.log.append(("upload", local_path, remote_path))
        if local_path in self.failing_uploads:
            raise BootstrapExecutionError(f"upload {local_path} failed")

    def run(self, command):
        self.log.append(("run", command))
        return self.exit_codes.get(command, 0), f"output of {command}"

    def close(self):
        self.closed = True
        self.log.append(("close",))


class FakeSessionFactory(SessionFactory):
    """`failures` are raised by successive connect() calls before one succeeds."""

    def __init__(self, failures=None, exit_codes=None, failing_uploads=None):
        self.failures = list(failures or [])
        self.exit_codes = exit_codes or {}
        self.failing_uploads = set(failing_uploads or ())
        self.attempts = 0
        self.descriptors = []
        self.sessions: List[FakeSession] = []
        self.log: List[tuple] = []

    def connect(self, descriptor):
        self.attempts += 1
        self.descriptors.append(descriptor)
        if self.failures:
            raise self.failures.pop(0)
        session = FakeSession(self.log, self.exit_codes, self.failing_uploads)
        self.sessions.append(session)
        return session


def plan_from_yaml(text: str, overrides=None, known_types=None):
    config = ConfigLoader().load_text(text)
    variables = resolve_variables(config, overrides, environ={})
    return PlanningPipeline(known_types).run(config, variables)


@pytest.fixture
def stack_yaml():
    return STACK_YAML


@pytest.fixture
def planner():
    return plan_from_yaml
