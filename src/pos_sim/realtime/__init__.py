"""Per-session broadcast channel used to keep viewers in sync with the host."""
