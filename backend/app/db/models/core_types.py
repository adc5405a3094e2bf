import enum

class Role(str, enum.Enum):
    admin = "ADMIN"
    supervisor = "SUPERVISOR"
    operator = "OPERATOR"
    procurement_specialist = "PROCUREMENT_SPECIALIST"

class PeriodStatus(str, enum.Enum):
    open = "OPEN"
    closed = "CLOSED"

class PRFStatus(str, enum.Enum):
    draft = "DRAFT"
    pending = "PENDING"
    approved = "APPROVED"
    rejected = "REJECTED"
    closed = "CLOSED"

class POStatus(str, enum.Enum):
    open = "OPEN"
    closed = "CLOSED"

class DeliveryStatus(str, enum.Enum):
    draft = "DRAFT"
    posted = "POSTED"
    rejected = "REJECTED"

class NCRType(str, enum.Enum):
    price_variance = "PRICE_VARIANCE"
    manual = "MANUAL"

class NCRStatus(str, enum.Enum):
    open = "OPEN"
    sent = "SENT"
    credited = "CREDITED"
    rejected = "REJECTED"
    resolved = "RESOLVED"

class FinancialImpact(str, enum.Enum):
    none = "NONE"
    credit = "CREDIT"
    loss = "LOSS"
