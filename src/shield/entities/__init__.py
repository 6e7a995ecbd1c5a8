"""Shield's own records touched by the Procore integration.

Provides SQLAlchemy models (Subcontractor, Project, ProjectSubcontractor,
Verification, AuditLog) and EntityRepository / AuditLogRepository, the
database-backed LocalEntityStore and AuditSink.
"""
