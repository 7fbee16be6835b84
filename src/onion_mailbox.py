#!/usr/bin/env python3
# onion_mailbox.py — Drop-and-collect SFTP mailbox retrieval over Tor/SOCKS: tunnel dial, SSH session,
# transfer-then-remove with per-file failure isolation, optional Tor pre-flight checks.
# License: MIT
from __future__ import annotations

import argparse
import errno
import json
import logging
import math
import os
import shutil
import socket
import stat
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import paramiko
import requests
import socks
from stem import Signal
from stem.control import Controller

__version__ = "1.0.0"

LOGGER_NAME = "OnionMailbox"
log = logging.getLogger(LOGGER_NAME)

DEFAULT_PORT = 22
DEFAULT_REMOTE_DIR = "inbox"
DEFAULT_LOCAL_DIR = "downloads"
DEFAULT_PROXY_ADDR = "127.0.0.1:9050"
DEFAULT_CONNECT_TIMEOUT = 120.0
DEFAULT_CONTROL_PORT = 9051

IDENT_ENV = "ONION_MAILBOX_IDENT"
COPY_CHUNK = 1024 * 64
TOR_CHECK_URL = "https://check.torproject.org/api/ip"

# --- Errors ------------------------------------------------------------------

class MailboxError(Exception):
    """Base error; ``stage`` names the operation that failed."""

    stage = "run"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        if stage:
            self.stage = stage

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""

    def __str__(self) -> str:
        return f"{self.stage}: {self.message}"


class ConfigError(MailboxError):
    stage = "config"


class ProxyUnreachable(MailboxError):
    stage = "dial"


class TargetUnreachable(MailboxError):
    stage = "dial"


class ConnectTimeout(MailboxError):
    stage = "dial"


class HandshakeFailed(MailboxError):
    stage = "handshake"


class AuthenticationRejected(MailboxError):
    stage = "handshake"


class ChannelSetupFailed(MailboxError):
    stage = "sftp"


class LocalStorageUnavailable(MailboxError):
    stage = "local"


class ListingError(MailboxError):
    stage = "listing"


class DirectoryNotFound(ListingError):
    pass


class PermissionDenied(ListingError):
    pass


class TransferError(MailboxError):
    stage = "transfer"


class RemoveError(MailboxError):
    stage = "remove"

# --- Data classes ------------------------------------------------------------

@dataclass(frozen=True)
class ConnectionTarget:
    proxy_host: str
    proxy_port: int
    host: str
    port: int

    @property
    def proxy_addr(self) -> str:
        return _join_host_port(self.proxy_host, self.proxy_port)

    @property
    def address(self) -> str:
        return _join_host_port(self.host, self.port)


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class RemoteEntry:
    name: str
    is_dir: bool


@dataclass
class RunReport:
    transferred: List[str] = field(default_factory=list)
    failures: List[Tuple[str, MailboxError]] = field(default_factory=list)
    skipped_dirs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> int:
        return len(self.transferred)

    @property
    def failed(self) -> int:
        return len(self.failures)


@dataclass
class MailboxConfig:
    onion_address: str
    username: str
    password: str = field(repr=False)
    port: int = DEFAULT_PORT
    remote_dir: str = DEFAULT_REMOTE_DIR
    local_dir: str = DEFAULT_LOCAL_DIR
    proxy_addr: str = DEFAULT_PROXY_ADDR
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    def __post_init__(self):
        # Separators are forward slashes on the remote side, whatever the config was written on
        self.remote_dir = normalize_remote_dir(self.remote_dir)

    def connection_target(self) -> ConnectionTarget:
        proxy_host, proxy_port = parse_proxy_addr(self.proxy_addr)
        return ConnectionTarget(proxy_host, proxy_port, self.onion_address, self.port)

    def credentials(self) -> Credentials:
        return Credentials(self.username, self.password)

# --- Utilities ---------------------------------------------------------------

def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"

def normalize_remote_dir(path: str) -> str:
    return path.replace("\\", "/")

def remote_join(remote_dir: str, name: str) -> str:
    return f"{normalize_remote_dir(remote_dir).rstrip('/')}/{name}"

def _is_plain_name(name: str) -> bool:
    if name in ("", ".", ".."):
        return False
    return "/" not in name and "\\" not in name and os.sep not in name

def parse_proxy_addr(addr: str) -> Tuple[str, int]:
    addr = (addr or "").strip()
    host, sep, port_s = addr.rpartition(":")
    if not sep or not host or not port_s.isdigit():
        raise ConfigError(f"invalid proxy address {addr!r}, expected host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    port = int(port_s)
    if not 0 < port < 65536:
        raise ConfigError(f"invalid proxy port in {addr!r}")
    return host, port

def _parse_port(value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"invalid port {value!r}")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str) and value.strip().isdigit():
        port = int(value.strip())
    else:
        raise ConfigError(f"invalid port {value!r}")
    if not 0 < port < 65536:
        raise ConfigError(f"port out of range: {port}")
    return port

def _socket_err(exc: BaseException) -> Optional[BaseException]:
    return getattr(exc, "socket_err", None)

def _make_private_dirs(path: Path) -> None:
    # Every directory created on the way down is owner-only, not just the leaf
    missing = []
    p = path
    while not p.exists() and p.parent != p:
        missing.append(p)
        p = p.parent
    for d in reversed(missing):
        d.mkdir(mode=0o700, exist_ok=True)

def _close_quietly(obj: Any) -> None:
    if obj is None:
        return
    try:
        obj.close()
    except Exception as e:
        log.debug(f"close failed for {obj!r}: {e}")

# --- Configuration -----------------------------------------------------------

_REQUIRED_KEYS = ("onion_address", "username", "password")
_OPTIONAL_STR_KEYS = ("remote_dir", "local_dir", "proxy_addr")

def config_from_dict(raw: Dict[str, Any]) -> MailboxConfig:
    if not isinstance(raw, dict):
        raise ConfigError("invalid config format: expected a JSON object")

    missing = [k for k in _REQUIRED_KEYS if not raw.get(k)]
    if missing:
        raise ConfigError(f"missing required field(s): {', '.join(missing)}")
    for k in _REQUIRED_KEYS:
        if not isinstance(raw[k], str):
            raise ConfigError(f"field {k!r} must be a string")

    port = _parse_port(raw["port"]) if raw.get("port") not in (None, "") else DEFAULT_PORT

    for k in _OPTIONAL_STR_KEYS:
        if raw.get(k) not in (None, "") and not isinstance(raw[k], str):
            raise ConfigError(f"field {k!r} must be a string")

    timeout_raw = raw.get("connect_timeout")
    if timeout_raw in (None, ""):
        timeout = DEFAULT_CONNECT_TIMEOUT
    else:
        if isinstance(timeout_raw, bool):
            raise ConfigError(f"invalid connect_timeout {timeout_raw!r}")
        try:
            timeout = float(timeout_raw)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid connect_timeout {timeout_raw!r}") from e
        if not math.isfinite(timeout) or timeout <= 0:
            raise ConfigError("connect_timeout must be a positive number of seconds")

    config = MailboxConfig(
        onion_address=raw["onion_address"],
        username=raw["username"],
        password=raw["password"],
        port=port,
        remote_dir=raw.get("remote_dir") or DEFAULT_REMOTE_DIR,
        local_dir=raw.get("local_dir") or DEFAULT_LOCAL_DIR,
        proxy_addr=raw.get("proxy_addr") or DEFAULT_PROXY_ADDR,
        connect_timeout=timeout,
    )
    parse_proxy_addr(config.proxy_addr)
    return config

def load_config(path: str) -> MailboxConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except OSError as e:
        raise ConfigError(f"could not open config file: {e}") from e
    except ValueError as e:
        raise ConfigError(f"invalid config format: {e}") from e
    return config_from_dict(raw)

# --- Tunnel dialer -----------------------------------------------------------

def dial_through_proxy(target: ConnectionTarget, timeout: Optional[float] = None) -> socket.socket:
    # rdns: .onion names only resolve at the proxy
    sock = socks.socksocket()
    sock.set_proxy(socks.SOCKS5, target.proxy_host, target.proxy_port, rdns=True)
    sock.settimeout(timeout)
    try:
        sock.connect((target.host, target.port))
    except socks.ProxyConnectionError as e:
        _close_quietly(sock)
        if isinstance(_socket_err(e), socket.timeout):
            raise ConnectTimeout(f"proxy {target.proxy_addr} timed out") from e
        raise ProxyUnreachable(f"proxy {target.proxy_addr} unreachable: {e}") from e
    except socks.ProxyError as e:
        _close_quietly(sock)
        if isinstance(_socket_err(e), socket.timeout):
            raise ConnectTimeout(f"relay to {target.address} timed out") from e
        raise TargetUnreachable(f"relay to {target.address} failed: {e}") from e
    except socket.timeout as e:
        _close_quietly(sock)
        raise ConnectTimeout(f"connect to {target.address} timed out") from e
    except OSError as e:
        _close_quietly(sock)
        raise ProxyUnreachable(f"proxy {target.proxy_addr} unreachable: {e}") from e
    log.info(f"Tunnel up: {target.proxy_addr} -> {target.address}")
    return sock

# --- Secure session ----------------------------------------------------------

class SecureSession:
    """Authenticated SSH transport; owns the tunneled socket."""

    def __init__(self, transport: paramiko.Transport, sock: socket.socket, target: ConnectionTarget):
        self.transport = transport
        self.sock = sock
        self.target = target
        self._closed = False

    @property
    def is_active(self) -> bool:
        return not self._closed and self.transport.is_active()

    def close(self):
        if self._closed:
            return
        self._closed = True
        _close_quietly(self.transport)
        _close_quietly(self.sock)
        log.info(f"Session closed: {self.target.address}")

    def __enter__(self) -> "SecureSession":
        return self

    def __exit__(self, *exc):
        self.close()


def _remaining(deadline: float) -> float:
    return deadline - time.monotonic()

def open_session(
    target: ConnectionTarget,
    credentials: Credentials,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> SecureSession:
    deadline = time.monotonic() + timeout
    sock = dial_through_proxy(target, timeout=timeout)

    transport = None
    try:
        remaining = _remaining(deadline)
        if remaining <= 0:
            raise ConnectTimeout(f"connect to {target.address} exceeded {timeout:.0f}s", stage="handshake")
        transport = paramiko.Transport(sock)
        transport.banner_timeout = remaining
        transport.handshake_timeout = remaining
        try:
            transport.start_client(timeout=remaining)
        except (paramiko.SSHException, OSError, EOFError) as e:
            if _remaining(deadline) <= 0:
                raise ConnectTimeout(f"handshake with {target.address} timed out", stage="handshake") from e
            raise HandshakeFailed(f"SSH handshake failed: {e}") from e
        # start_client returns quietly when its timeout lapses mid-negotiation
        if _remaining(deadline) <= 0:
            raise ConnectTimeout(f"handshake with {target.address} timed out", stage="handshake")

        # Host identity is accepted without verification; surface it so the gap is never silent
        try:
            key = transport.get_remote_server_key()
        except paramiko.SSHException as e:
            raise HandshakeFailed(f"no host key after negotiation: {e}") from e
        log.warning(
            f"Host key NOT verified for {target.address}: {key.get_name()} {key.get_fingerprint().hex()}"
        )

        transport.auth_timeout = max(_remaining(deadline), 0.1)
        try:
            transport.auth_password(credentials.username, credentials.password)
        except paramiko.AuthenticationException as e:
            if _remaining(deadline) <= 0:
                raise ConnectTimeout(f"authentication with {target.address} timed out", stage="handshake") from e
            raise AuthenticationRejected(f"credentials for {credentials.username!r} refused: {e}") from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise HandshakeFailed(f"SSH authentication exchange failed: {e}") from e
        if not transport.is_authenticated():
            raise AuthenticationRejected(f"credentials for {credentials.username!r} refused")
    except Exception:
        _close_quietly(transport)
        _close_quietly(sock)
        raise

    log.info(f"SSH session established with {target.address} as {credentials.username}")
    return SecureSession(transport, sock, target)

# --- File-transfer subsystem -------------------------------------------------

class SFTPHandle:
    """SFTP channel bound to a single SecureSession."""

    def __init__(self, client: paramiko.SFTPClient, session: SecureSession):
        self.client = client
        self.session = session
        self._closed = False

    @classmethod
    def open(cls, session: SecureSession) -> "SFTPHandle":
        if not session.is_active:
            raise ChannelSetupFailed("session is not active")
        try:
            client = paramiko.SFTPClient.from_transport(session.transport)
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise ChannelSetupFailed(f"SFTP client error: {e}") from e
        if client is None:
            raise ChannelSetupFailed("SFTP subsystem channel was refused")
        return cls(client, session)

    def _check_open(self):
        if self._closed:
            raise MailboxError("handle used after close", stage="sftp")
        if not self.session.is_active:
            raise MailboxError("handle used after its session closed", stage="sftp")

    def list_directory(self, path: str) -> List[RemoteEntry]:
        self._check_open()
        try:
            attrs = self.client.listdir_attr(path)
        except FileNotFoundError as e:
            raise DirectoryNotFound(f"remote directory {path} not found") from e
        except PermissionError as e:
            raise PermissionDenied(f"remote directory {path} not accessible") from e
        except IOError as e:
            if e.errno == errno.ENOENT:
                raise DirectoryNotFound(f"remote directory {path} not found") from e
            if e.errno == errno.EACCES:
                raise PermissionDenied(f"remote directory {path} not accessible") from e
            raise ListingError(f"failed to read remote directory {path}: {e}") from e
        except paramiko.SSHException as e:
            raise ListingError(f"failed to read remote directory {path}: {e}") from e
        return [
            RemoteEntry(name=a.filename, is_dir=bool(a.st_mode is not None and stat.S_ISDIR(a.st_mode)))
            for a in attrs
        ]

    def open_for_read(self, path: str):
        self._check_open()
        try:
            return self.client.open(path, "rb")
        except (IOError, paramiko.SSHException) as e:
            raise TransferError(f"open failed: {e}") from e

    def remove(self, path: str) -> None:
        self._check_open()
        try:
            self.client.remove(path)
        except (IOError, paramiko.SSHException) as e:
            raise RemoveError(f"remove failed: {e}") from e

    def close(self):
        if self._closed:
            return
        self._closed = True
        _close_quietly(self.client)

    def __enter__(self) -> "SFTPHandle":
        return self

    def __exit__(self, *exc):
        self.close()

# --- Mailbox processor -------------------------------------------------------

class MailboxProcessor:
    def __init__(self, handle, remote_dir: str, local_dir, logger: Optional[logging.Logger] = None):
        self.handle = handle
        self.remote_dir = normalize_remote_dir(remote_dir)
        self.local_dir = Path(local_dir)
        self.log = logger or log

    def ensure_local_root(self) -> None:
        try:
            _make_private_dirs(self.local_dir)
        except OSError as e:
            raise LocalStorageUnavailable(f"failed to create local directory {self.local_dir}: {e}") from e
        if not self.local_dir.is_dir():
            raise LocalStorageUnavailable(f"{self.local_dir} is not a directory")

    def run(self) -> RunReport:
        self.ensure_local_root()

        entries = self.handle.list_directory(self.remote_dir)
        report = RunReport()
        if not entries:
            self.log.info("No files found in remote directory")
            return report

        for entry in entries:
            if entry.is_dir:
                report.skipped_dirs.append(entry.name)
                continue
            try:
                self.process_entry(entry)
            except MailboxError as e:
                self.log.error(f"Failed to process {entry.name}: {e}")
                report.failures.append((entry.name, e))
                continue
            report.transferred.append(entry.name)
            self.log.info(f"Successfully processed: {entry.name}")
        return report

    def process_entry(self, entry: RemoteEntry) -> None:
        if not _is_plain_name(entry.name):
            raise TransferError(f"refusing unsafe entry name {entry.name!r}")
        remote_path = remote_join(self.remote_dir, entry.name)
        local_path = self.local_dir / entry.name
        self.transfer(remote_path, local_path)
        # Only reached once the local copy is complete
        self.handle.remove(remote_path)

    def transfer(self, remote_path: str, local_path: Path) -> int:
        src = self.handle.open_for_read(remote_path)
        try:
            try:
                fd = os.open(local_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            except OSError as e:
                raise TransferError(f"create failed: {e}") from e
            with os.fdopen(fd, "wb") as dst:
                try:
                    shutil.copyfileobj(src, dst, COPY_CHUNK)
                    dst.flush()
                except Exception as e:
                    raise TransferError(f"copy failed: {e}") from e
                total = dst.tell()
        finally:
            _close_quietly(src)
        self.log.debug(f"Copied {remote_path} -> {local_path} ({total} bytes)")
        return total

# --- Tor helpers -------------------------------------------------------------

def tor_exit_ip(proxy_addr: str = DEFAULT_PROXY_ADDR, timeout: float = 15.0) -> Optional[str]:
    sp = f"socks5h://{proxy_addr}"
    try:
        r = requests.get(TOR_CHECK_URL, proxies={"http": sp, "https": sp}, timeout=timeout)
        js = r.json()
        if js.get("IsTor"):
            return js.get("IP")
        return None
    except Exception as e:
        log.debug(f"Tor check error: {e}")
        return None

def renew_tor_identity(control_port: int = DEFAULT_CONTROL_PORT, password: Optional[str] = None) -> bool:
    try:
        with Controller.from_port(port=control_port) as c:
            # Prefer cookie auth if available; fall back to password if provided
            try:
                c.authenticate()
            except Exception:
                if password:
                    c.authenticate(password=password)
                else:
                    raise
            c.signal(Signal.NEWNYM)
            log.info("Tor NEWNYM signaled")
        return True
    except Exception as e:
        log.warning(f"Tor NEWNYM failed: {e}")
        return False

# --- Orchestration -----------------------------------------------------------

def run(config: MailboxConfig, logger: Optional[logging.Logger] = None) -> RunReport:
    target = config.connection_target()
    with open_session(target, config.credentials(), timeout=config.connect_timeout) as session:
        with SFTPHandle.open(session) as handle:
            return MailboxProcessor(handle, config.remote_dir, config.local_dir, logger).run()

# --- CLI ---------------------------------------------------------------------

def _startup_ident():
    if os.environ.get(IDENT_ENV) == "1":
        print(f"onion-mailbox {__version__}")
        sys.exit(0)

def _init_logging(log_dir: Optional[str] = None, verbose: bool = False) -> logging.Logger:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    logfile = None
    failure = None
    if log_dir:
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            ts = datetime.now().strftime("%Y%m%d_%H%M%S")
            logfile = Path(log_dir) / f"mailbox_{ts}.log"
            handlers.append(logging.FileHandler(logfile, encoding="utf-8"))
        except OSError as e:
            logfile = None
            failure = ConfigError(f"cannot write log file under {log_dir}: {e}")
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )
    logging.getLogger("paramiko").setLevel(logging.DEBUG if verbose else logging.WARNING)
    # Console handler is in place by now
    if failure:
        raise failure
    if logfile:
        log.info(f"Log file: {logfile}")
    return log

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="onion-mailbox",
        description="Collect files from an SFTP drop directory reachable through a SOCKS proxy.",
    )
    p.add_argument("-c", "--config", default="config.json", help="Path to config file")
    p.add_argument("--proxy", default="", help="Override proxy address (host:port)")
    p.add_argument("--check-tor", action="store_true", help="Confirm the proxy is a Tor exit before connecting")
    p.add_argument("--new-identity", action="store_true", help="Signal NEWNYM on the Tor control port before connecting")
    p.add_argument("--control-port", type=int, default=None,
                   help="Tor control port for --new-identity (default: $TOR_CTL or 9051)")
    p.add_argument("--log-dir", default=os.environ.get("LOG_DIR") or None, help="Also write a log file here")
    p.add_argument("-v", "--verbose", action="store_true")
    return p

def _control_port(value: Optional[int]) -> int:
    if value is not None:
        return value
    env = os.environ.get("TOR_CTL")
    if not env:
        return DEFAULT_CONTROL_PORT
    try:
        return int(env)
    except ValueError as e:
        raise ConfigError(f"invalid TOR_CTL {env!r}") from e

def _stats(report: RunReport, elapsed: float):
    total = report.ok + report.failed
    log.info("=" * 60)
    log.info("Mailbox run complete")
    log.info(f"Success: {report.ok}/{total}  Fail: {report.failed}/{total}  Directories skipped: {len(report.skipped_dirs)}")
    for name, err in report.failures:
        log.info(f"  ✗ {name}: {err}")
    log.info(f"Elapsed: {elapsed:.2f}s")
    log.info("=" * 60)

def main(argv: Optional[List[str]] = None) -> int:
    _startup_ident()
    args = _build_parser().parse_args(argv)
    try:
        _init_logging(args.log_dir, args.verbose)
        config = load_config(args.config)
        if args.proxy:
            config.proxy_addr = args.proxy
            parse_proxy_addr(config.proxy_addr)
        control_port = _control_port(args.control_port)
    except ConfigError as e:
        log.error(f"Fatal: {e}")
        return 1

    if args.new_identity:
        renew_tor_identity(control_port, os.environ.get("TOR_PASS") or None)
    if args.check_tor:
        exit_ip = tor_exit_ip(config.proxy_addr)
        if exit_ip:
            log.info(f"Tor confirmed, exit IP {exit_ip}")
        else:
            log.warning("Could not confirm Tor through proxy; continuing")

    t0 = time.time()
    try:
        report = run(config)
    except MailboxError as e:
        log.error(f"Fatal: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n[!] Interrupted by user", file=sys.stderr)
        return 130
    _stats(report, time.time() - t0)
    return 0


if __name__ == "__main__":
    sys.exit(main())
