"""Records produced by the phase executors: researched policies and their audits."""

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from policyglass.db.base import Base
from policyglass.models.job import utcnow


class Policy(Base):
    """
    Output of the research phase.

    Holds the company behind a policy URL and the policy text digest the
    research executor produced for it, along with the raw model response.
    """
    __tablename__ = "policies"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    company_name = Column(String(255), nullable=False, comment="Company the policy belongs to.")
    source_url = Column(Text, nullable=False, comment="URL the research phase started from.")
    terms_text = Column(Text, nullable=False, comment="Policy digest used as audit input.")
    raw_response = Column(Text, nullable=True, comment="Unparsed model output, kept for debugging.")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    audit_reports = relationship("AuditReport", back_populates="policy")


class AuditReport(Base):
    """Scored audit of a :class:`Policy`."""
    __tablename__ = "audit_reports"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    policy_id = Column(Integer, ForeignKey("policies.id"), nullable=False, index=True)
    total_score = Column(Integer, nullable=False)
    letter_grade = Column(String(1), nullable=False)
    overall_summary = Column(Text, nullable=False, default="")
    confidence = Column(Float, nullable=True)
    raw_audit_json = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    policy = relationship("Policy", back_populates="audit_reports")
    section_scores = relationship(
        "SectionScore",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="SectionScore.id",
    )


class SectionScore(Base):
    __tablename__ = "section_scores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    report_id = Column(Integer, ForeignKey("audit_reports.id"), nullable=False, index=True)
    section_name = Column(String(100), nullable=False)
    score = Column(Integer, nullable=False)
    max_score = Column(Integer, nullable=False)
    commentary = Column(Text, nullable=False, default="")

    report = relationship("AuditReport", back_populates="section_scores")
