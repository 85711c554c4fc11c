#!/usr/bin/env python3
"""
STACKFORGE REMOTE SESSIONS
--------------------------
The remote-session collaborator used by the bootstrap driver, and its
paramiko implementation. Connection failures are classified here:
refused/timeout are retryable, rejected credentials are not.
"""

import logging
import os
import socket
from abc import ABCMeta, abstractmethod
from typing import Tuple

import paramiko

from stackforge.core.errors import (
    AuthenticationError,
    BootstrapConnectionError,
    BootstrapExecutionError,
)
from stackforge.core.models import ConnectionDescriptor

logger = logging.getLogger("stackforge.remote")


class RemoteSession(metaclass=ABCMeta):

    @abstractmethod
    def upload(self, local_path: str, remote_path: str) -> None:
        pass

    @abstractmethod
    def run(self, command: str) -> Tuple[int, str]:
        """Returns (exit code, combined output)."""

    @abstractmethod
    def close(self) -> None:
        pass


class SessionFactory(metaclass=ABCMeta):

    @abstractmethod
    def connect(self, descriptor: ConnectionDescriptor) -> RemoteSession:
        """Raises BootstrapConnectionError (retryable) or AuthenticationError."""


class ParamikoSession(RemoteSession):

    def __init__(self, client: paramiko.SSHClient, descriptor: ConnectionDescriptor):
        self._client = client
        self._descriptor = descriptor
        self._sftp_client = None

    def __repr__(self):
        return f'<ssh {self._descriptor.user}@{self._descriptor.host}:{self._descriptor.port}>'

    def _sftp(self) -> paramiko.SFTPClient:
        if self._sftp_client is None:
            self._sftp_client = self._client.open_sftp()
        return self._sftp_client

    def upload(self, local_path, remote_path):
        source = os.path.expanduser(local_path)
        try:
            self._sftp().put(source, remote_path)
        except (OSError, paramiko.SSHException) as e:
            raise BootstrapExecutionError(f"upload {local_path} -> {remote_path} failed: {e}")

    def run(self, command):
        try:
            _, stdout, stderr = self._client.exec_command(command, timeout=None)
            exit_code = stdout.channel.recv_exit_status()
            output = stdout.read().decode(errors="replace") + stderr.read().decode(errors="replace")
        except (OSError, paramiko.SSHException) as e:
            raise BootstrapExecutionError(f"command could not be run: {e}", command=command)
        return exit_code, output

    def close(self):
        if self._sftp_client is not None:
            self._sftp_client.close()
            self._sftp_client = None
        self._client.close()


class ParamikoSessionFactory(SessionFactory):

    def connect(self, descriptor):
        if descriptor.protocol != "ssh":
            raise AuthenticationError(f"unsupported connection protocol {descriptor.protocol!r}")
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        key_filename = os.path.expanduser(descriptor.private_key) if descriptor.private_key else None
        try:
            client.connect(
                descriptor.host,
                port=descriptor.port,
                username=descriptor.user,
                password=descriptor.password,
                key_filename=key_filename,
                look_for_keys=key_filename is None and descriptor.password is None,
                allow_agent=key_filename is None and descriptor.password is None,
                timeout=descriptor.timeout,
                banner_timeout=descriptor.timeout,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationError(f"authentication to {descriptor.user}@{descriptor.host} rejected: {e}")
        except paramiko.ssh_exception.NoValidConnectionsError as e:
            client.close()
            raise BootstrapConnectionError(f"cannot connect to {descriptor.host}:{descriptor.port}: {e}")
        except (socket.timeout, ConnectionError) as e:
            client.close()
            raise BootstrapConnectionError(f"connection to {descriptor.host}:{descriptor.port} failed: {e}")
        except paramiko.SSHException as e:
            # Banner/handshake trouble while sshd is still starting up
            client.close()
            raise BootstrapConnectionError(f"ssh handshake with {descriptor.host} failed: {e}")
        except OSError as e:
            client.close()
            raise BootstrapConnectionError(f"cannot reach {descriptor.host}: {e}")
        logger.debug(f"Connected to {descriptor.user}@{descriptor.host}:{descriptor.port}")
        return ParamikoSession(client, descriptor)
