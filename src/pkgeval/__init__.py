"""pkgeval: run every registered package's test suite against a runtime version."""

__version__ = "0.1.0"
