"""Dynamic provisioning and CSI controller services."""
