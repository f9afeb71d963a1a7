# netdaemons

Building blocks for small UDP network services. It covers a TFTP request
listener, a syslog receiver, a thread supervisor for the services, and the
message queue that carries events to a monitoring console.

## Installation

```
pip install netdaemons
```

The package uses only the Python standard library and needs Python 3.10 or later.

## Modules

- `netdaemons.services`: `ServiceManager` starts, stops and restarts service
  threads. Each service is described by a `ServiceConfig` and flagged by a
  `ServiceMask`. `bind_service_socket` opens a service's UDP socket as IPv4,
  IPv6 or dual-stack, and raises `BindError` when binding fails.
- `netdaemons.syslog`: `SyslogServer` accepts syslog datagrams and checks them
  with `check_syslog_message`. It appends each one to a log file, laid out by
  `format_log_line`, and passes each one as a `SyslogMessage` to a callback.
- `netdaemons.messaging`: `MessageQueue` queues notifications for a console
  and can block the sender until a message has been delivered.
  `ConsoleDispatcher` routes incoming console requests to their handlers.
  `compute_restart` works out which services must restart after a settings
  change.
- `netdaemons.dir_index`: `create_index_file` writes a listing of a directory
  into a text file inside that directory.
- `netdaemons.tftp_listener`: `TftpListener` takes connection requests from
  the TFTP port and hands them to a `TransferPool`. The pool has a bounded
  number of transfer slots and keeps some of them permanent. `DuplicateFilter`
  logs a request that arrives twice.
- `netdaemons.tftp_debug`: helpers that format trace lines and hex dumps of
  TFTP blocks.

## Example

```python
from netdaemons.syslog import SyslogServer

server = SyslogServer(log_file="syslog.txt", pipe=None, on_message=print)
server.handle_datagram(b"<13>hello world", ("192.0.2.10", 514))
server.close()
```