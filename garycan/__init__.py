"""SocketCAN frames, sending, per-identifier receiving and bus health monitoring."""

__version__ = "0.1.0"
__all__ = ["canbus", "sender", "receiver", "rcvlist", "netlink", "monitor"]