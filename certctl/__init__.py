"""certctl - certificate renewal for cluster control-plane and external etcd nodes."""

__version__ = "0.1.0"
