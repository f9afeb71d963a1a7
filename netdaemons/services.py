"""Lifecycle management for the daemon's service threads.

Each service runs in its own thread.  A service may own a listening socket
that is bound before the thread starts, and can be woken either through an
event or, when it is blocked on a socket read, by a datagram sent to its
own port.
"""

from __future__ import annotations

import enum
import errno
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

log = logging.getLogger(__name__)

BOOTPD_PORT = 67
BOOTPC_PORT = 68
TFTP_PORT = 69
SNTP_PORT = 123
DNS_PORT = 53
SYSLOG_PORT = 514

WAKE_UP_PAYLOAD = b"wake up\x00"


class ServiceMask(enum.IntFlag):
    """Bit identifying each service in a set of services."""

    NONE = 0
    CONSOLE = 0x0001
    REGISTRY = 0x0002
    SCHEDULER = 0x0004
    DHCP_SERVER = 0x0010
    TFTP_SERVER = 0x0020
    SNTP_SERVER = 0x0040
    DNS_SERVER = 0x0080
    SYSLOG_SERVER = 0x0100
    MANAGEMENT = CONSOLE | REGISTRY | SCHEDULER


class ServiceStatus(enum.Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class BindError(OSError):
    """A service socket could not be created or bound."""


@dataclass(frozen=True)
class ServiceConfig:
    """Static description of one service.

    A ``sock_type`` of 0 means the service opens no socket of its own.
    ``wake_by_event`` is False for services blocked on a socket read; they
    are woken by a datagram sent to their port instead.
    """

    name: str
    mask: ServiceMask
    target: Callable[["ServiceContext"], None]
    family: int = socket.AF_UNSPEC
    sock_type: int = 0
    service: Optional[str] = None
    port: int = 0
    rfc_port: int = 0
    interface: Optional[str] = None
    wake_by_event: bool = True
    restart: bool = False
    gui: bool = False


@dataclass
class ServiceContext:
    """Runtime state shared between a service thread and its manager."""

    config: ServiceConfig
    sock: Optional[socket.socket] = None
    event: threading.Event = field(default_factory=threading.Event)
    running: bool = False
    initialized: bool = False
    soft_reset: bool = False
    thread: Optional[threading.Thread] = None

    def wait(self, timeout=None):
        """Wait for a wake-up; return True if woken, False on timeout."""
        woken = self.event.wait(timeout)
        if woken:
            self.event.clear()
        return woken

    def wake(self):
        """Wake the service thread; return True if the signal was delivered."""
        if self.config.wake_by_event:
            self.event.set()
            return True
        return self._send_wake_datagram()

    def _send_wake_datagram(self):
        if self.sock is None:
            return False
        try:
            port = self.sock.getsockname()[1]
            family = self.sock.family
        except OSError:
            return False
        host = self.config.interface or (
            "::1" if family == socket.AF_INET6 else "127.0.0.1"
        )
        try:
            infos = socket.getaddrinfo(
                host, port, 0, socket.SOCK_DGRAM, 0, socket.AI_NUMERICHOST
            )
            fam, stype, proto, _, addr = infos[0]
            with socket.socket(fam, stype, proto) as sender:
                sent = sender.sendto(WAKE_UP_PAYLOAD, addr)
        except OSError as exc:
            log.debug("wake-up datagram for %s failed: %s", self.config.name, exc)
            return False
        return sent > 0

    def _free_resources(self):
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError:
                pass
        self.sock = None
        self.event.clear()
        self.soft_reset = False


def is_ipv6_enabled():
    """Return True if an IPv6 datagram socket can be opened."""
    if not socket.has_ipv6:
        return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_DGRAM, socket.IPPROTO_UDP):
            return True
    except OSError:
        return False


def resolve_family(family, ipv4, ipv6):
    """Narrow the address family according to the IPv4/IPv6 settings."""
    if ipv4 and not ipv6 and family in (socket.AF_INET6, socket.AF_UNSPEC):
        return socket.AF_INET
    if ipv6 and not ipv4 and family in (socket.AF_INET, socket.AF_UNSPEC):
        return socket.AF_INET6
    return family


def bind_service_socket(name, family, sock_type, service, port, rfc_port,
                        interface, ipv4, ipv6):
    """Create and bind the listening socket of a service.

    The service name is used for the lookup when ``port`` is the RFC port,
    the numeric port otherwise.  Raises BindError on any failure.
    """
    host = interface if interface else None
    serv = service if (port == rfc_port and service) else str(port)
    try:
        infos = socket.getaddrinfo(
            host, serv, resolve_family(family, ipv4, ipv6), sock_type, 0,
            socket.AI_PASSIVE,
        )
    except OSError as exc:
        raise BindError(f"Error : Can't create socket\nError {exc}") from exc

    fam, stype, proto, _, addr = infos[0]
    try:
        sock = socket.socket(fam, stype, proto)
    except OSError as exc:
        raise BindError(f"Error : Can't create socket\nError {exc}") from exc

    if sock_type == socket.SOCK_DGRAM:
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            log.debug("Port %s may be reused", addr[1])
        except OSError:
            log.debug("setsockopt error")

    if family == socket.AF_UNSPEC and fam == socket.AF_INET6:
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        except (OSError, AttributeError):
            pass

    try:
        sock.bind(addr)
    except OSError as exc:
        sock.close()
        code = exc.errno
        if code == errno.EADDRNOTAVAIL:
            message = (
                f"Error {code}\n{exc.strerror}\n\n"
                f"Tried to bind the {name} port\n"
                f"to the interface {interface}\nwhich is not available for this host\n"
                f"Either remove the {name} service or suppress {interface} "
                "interface assignation"
            )
        elif code in (errno.EINVAL, errno.EADDRINUSE):
            message = (
                f"Error {code}\n{exc.strerror}\n\n"
                f"Can not bind the {name} port\n"
                "an application is already listening on this port"
            )
        else:
            message = f"Bind error {code}\n{exc.strerror}"
        log.debug("bind port to %s port %s failed", addr[0], addr[1])
        raise BindError(code, message) from exc
    return sock


NotifyCallback = Callable[[ServiceMask, ServiceStatus], None]


class ServiceManager:
    """Starts, stops and restarts the configured service threads."""

    INIT_ATTEMPTS = 30
    INIT_POLL = 0.1
    JOIN_TIMEOUT = 5.0

    def __init__(self, configs, enabled, notify=None):
        self.services: dict[str, ServiceContext] = {
            cfg.name: ServiceContext(cfg) for cfg in configs
        }
        self.enabled = ServiceMask(enabled)
        self.notify: Optional[NotifyCallback] = notify
        self.ipv4 = True
        self.ipv6 = True
        self._lock = threading.RLock()

    def _notify(self, ctx, status):
        if ctx.config.gui and self.notify is not None:
            self.notify(ctx.config.mask, status)

    def _selected(self, cfg, soft):
        return bool(
            (not soft and cfg.mask & ServiceMask.MANAGEMENT) or self.enabled & cfg.mask
        )

    def start_service(self, name):
        """Start one service; return False if it was already running."""
        ctx = self.services[name]
        cfg = ctx.config
        with self._lock:
            if ctx.running:
                return False
            if cfg.sock_type:
                ctx.sock = bind_service_socket(
                    cfg.name, cfg.family, cfg.sock_type, cfg.service, cfg.port,
                    cfg.rfc_port, cfg.interface, self.ipv4, self.ipv6,
                )
            else:
                ctx.sock = None
            ctx.event = threading.Event()
            ctx.soft_reset = False
            ctx.initialized = False
            thread = threading.Thread(
                target=self._run, args=(ctx,), name=cfg.name, daemon=True
            )
            ctx.thread = thread
            ctx.running = True
            thread.start()
        self._notify(ctx, ServiceStatus.RUNNING)
        return True

    def _run(self, ctx):
        try:
            ctx.config.target(ctx)
        except Exception:
            log.exception("service %s failed", ctx.config.name)
        finally:
            self._on_exit(ctx)

    def _on_exit(self, ctx):
        with self._lock:
            if ctx.thread is not threading.current_thread():
                return
            log.debug("process %s has terminated", ctx.config.name)
            ctx._free_resources()
            restart = (
                ctx.config.restart
                and bool(self.enabled & ctx.config.mask)
                and ctx.running
            )
            ctx.running = False
        self._notify(ctx, ServiceStatus.STOPPED)
        if restart:
            try:
                self.start_service(ctx.config.name)
            except BindError as exc:
                log.error("%s", exc)

    def start_all(self, soft):
        """Start the enabled services (and management threads unless soft).

        Waits for the started services to report their initialisation and
        returns the set of running services.
        """
        to_start = 0
        for name, ctx in self.services.items():
            if not self._selected(ctx.config, soft):
                continue
            try:
                self.start_service(name)
            except BindError as exc:
                log.error("%s", exc)
            to_start += 1

        attempts = 0
        while True:
            attempts += 1
            time.sleep(self.INIT_POLL)
            ready = sum(1 for ctx in self.services.values() if ctx.initialized)
            if ready >= to_start or attempts >= self.INIT_ATTEMPTS:
                break
        if attempts >= self.INIT_ATTEMPTS:
            for ctx in self.services.values():
                if self._selected(ctx.config, soft) and not ctx.initialized:
                    log.warning("service %s not started", ctx.config.name)
        else:
            log.debug("--- all services started, init done")

        if is_ipv6_enabled():
            log.debug("IPv6 enabled")
        for ctx in self.services.values():
            if ctx.running:
                self._notify(ctx, ServiceStatus.RUNNING)
        return self.running_services()

    def terminate_all(self, soft):
        """Stop every running service; keep management threads when soft."""
        threads = []
        for ctx in self.services.values():
            if soft and ctx.config.mask & ServiceMask.MANAGEMENT:
                continue
            if ctx.running:
                ctx.running = False
                ctx.wake()
                if ctx.thread is not None:
                    threads.append(ctx.thread)

        deadline = time.monotonic() + self.JOIN_TIMEOUT
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        with self._lock:
            for ctx in self.services.values():
                if not (soft and ctx.config.mask & ServiceMask.MANAGEMENT):
                    ctx._free_resources()
        log.debug("all level 1 threads have returned")

    def update_services(self, old, new, flap):
        """Apply a change of enabled services.

        Services in ``old`` but not ``new`` are stopped, those in ``new`` but
        not ``old`` are started, and running services in ``flap`` restarted.
        Management threads are left alone.
        """
        self.enabled = ServiceMask(new)
        for name, ctx in self.services.items():
            mask = ctx.config.mask
            if mask & ServiceMask.MANAGEMENT:
                continue
            was_on = bool(old & mask)
            now_on = bool(new & mask)
            do_flap = ctx.running and bool(flap & mask)
            if do_flap or (was_on and not now_on):
                log.debug("terminating %s service", name)
                ctx.running = False
                ctx.soft_reset = True
                ctx.wake()
                if ctx.thread is not None:
                    ctx.thread.join(self.JOIN_TIMEOUT)
            if do_flap or (not was_on and now_on):
                log.debug("starting %s service", name)
                try:
                    self.start_service(name)
                except BindError as exc:
                    log.error("%s", exc)

    def running_services(self):
        """Return the union of the masks of the running services."""
        result = ServiceMask.NONE
        for ctx in self.services.values():
            if ctx.running:
                result |= ctx.config.mask
        return result

    def wake_up(self, name):
        """Wake one service thread."""
        self.services[name].wake()
        return True