"""Status values stored in String columns."""


class CVStatus:
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProfessorStatus:
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    DELETED = "DELETED"


class KeywordSource:
    RESEARCH_AREA = "RESEARCH_AREA"
    PUBLICATION = "PUBLICATION"
    MANUAL = "MANUAL"


class SmtpStatus:
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class CampaignStatus:
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    STARTABLE = (DRAFT, SCHEDULED)


class EmailStatus:
    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    BLACKLISTED = "BLACKLISTED"


# Body placeholder meaning "let the LLM write this one"
AI_GENERATED = "AI_GENERATED"

# Alternate draft bodies are stored in one column joined by this
ALTERNATE_BODY_SEPARATOR = "###SPLIT###"

# The LLM separates alternative email drafts with this
EMAIL_OPTION_DELIMITER = "###END_OF_EMAIL###"
