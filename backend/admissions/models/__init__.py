from admissions.models.jobs import (
    AuditLog,
    Base,
    DocumentProcessJob,
    ExtractedData,
    NotificationDelivery,
)

__all__ = ["Base", "DocumentProcessJob", "ExtractedData", "NotificationDelivery", "AuditLog"]
