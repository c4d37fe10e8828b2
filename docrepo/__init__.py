"""docrepo: typed repositories over MongoDB collections."""

__version__ = "0.1.0"
