"""Pure domain layer: money, time and fiscal-period math. Zero I/O."""
