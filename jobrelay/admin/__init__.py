"""
Admin query interface.
"""

from jobrelay.admin.service import AdminService

__all__ = ["AdminService"]
