from .outreach import (  # noqa: F401
    CampaignCreate,
    CampaignSchedule,
    EmailLogBodyUpdate,
    SmtpAccountConfig,
)
