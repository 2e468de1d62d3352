"""Organizations and user membership."""

from .index import OrganizationIndex, member_from_row, organization_from_row

__all__ = ["OrganizationIndex", "member_from_row", "organization_from_row"]
