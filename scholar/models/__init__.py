"""Database models — re-exports all models.

Import from here:  from scholar.models import CV, EmailCampaign, ...
Or from submodules: from scholar.models.cv import CV
"""

from .base import Base  # noqa: F401

# Tenancy
from .tenancy import Tenant, User  # noqa: F401

# Global professor catalog
from .professors import Professor, ProfessorKeyword, University  # noqa: F401

# CVs & extracted keywords
from .cv import CV, CvKeyword  # noqa: F401

# Matching
from .matching import MatchResult  # noqa: F401

# Outreach
from .email import (  # noqa: F401
    EmailBlacklist,
    EmailCampaign,
    EmailLog,
    SmtpAccount,
)
