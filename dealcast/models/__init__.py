"""SQLAlchemy ORM models.

Models represent database tables:
- listings: Marketplace products upserted by the ingestor
- tenants: Accounts and their plan tier
- automation_rules: Tenant rules (predicates, copy mode, channels)
"""

from dealcast.models.listing import Listing
from dealcast.models.rule import AutomationRule
from dealcast.models.tenant import Tenant

__all__ = ["AutomationRule", "Listing", "Tenant"]
