"""UDP network service daemons: TFTP listener, syslog receiver and service supervision."""

__version__ = "0.1.0"