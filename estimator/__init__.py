"""Signal fusion and pricing evaluation for service-business quotes."""

__version__ = "0.1.0"
