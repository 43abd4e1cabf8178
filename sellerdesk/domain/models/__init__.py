"""Value objects and configuration records shared across layers."""
