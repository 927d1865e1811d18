from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from guildmaster.database import Base

class StripeEvent(Base):
    """Stripe event ids that were fully applied; redeliveries are acknowledged without re-applying."""
    __tablename__ = "stripe_events"

    id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
