"""Database models."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CallSignal(Base):
    """Signaling message exchanged between the two participants of a call.

    Rows are append-only: they are never updated and their lifetime follows
    the surrounding call record.
    """

    __tablename__ = "call_signals"

    id = Column(Integer, primary_key=True, index=True)
    call_id = Column(String, index=True, nullable=False)
    sender_id = Column(String, nullable=False)
    signal_type = Column(String, nullable=False)  # offer, answer, ice-candidate, decline
    signal_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class CallLog(Base):
    """Call history entry."""

    __tablename__ = "call_logs"

    id = Column(Integer, primary_key=True, index=True)
    call_id = Column(String, index=True, nullable=False)
    caller_id = Column(String, index=True, nullable=False)
    receiver_id = Column(String, index=True, nullable=True)
    call_type = Column(String, default="voice", nullable=False)  # voice, video
    status = Column(String, default="ringing", nullable=False)  # ringing, completed, missed, declined, failed
    duration = Column(Integer, nullable=True)  # seconds
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
