"""Certificate renewal for control-plane and external etcd nodes."""
