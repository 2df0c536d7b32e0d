"""uTP packet encoding and reliability bookkeeping."""

__version__ = "0.1.0"
__all__ = ["packet", "reliability"]