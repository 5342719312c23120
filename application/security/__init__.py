"""Access control for the operator-facing surface."""
