"""
Patient record sharing: content-addressed storage, time-bounded access grants
and wallet-based identity.
"""

from recordshare.service import RecordShareService, Result

__version__ = "0.1.0"

__all__ = ["RecordShareService", "Result"]
