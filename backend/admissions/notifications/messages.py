"""
User-facing notification text.

This module is the only place where user-visible wording is produced:
  - REASON_MESSAGES maps every ApplicationFailedReason to its Vietnamese
    message (the mapping is total; see tests/unit/test_messages.py).
  - render_success, render_cancelled and render_failure build the subject,
    plain-text, HTML and chat bodies for a terminal job outcome. A
    cancellation the applicant asked for gets a confirmation, not the
    error template.

Channel workers never compose text themselves; they deliver what the
dispatcher rendered here.
"""

from __future__ import annotations

import html
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from admissions.schemas.enums import ApplicationFailedReason, DocumentType, JobStatus

# ---------------------------------------------------------------------------
# Reason → message (total over ApplicationFailedReason)
# ---------------------------------------------------------------------------

REASON_MESSAGES: Mapping[ApplicationFailedReason, str] = MappingProxyType({
    ApplicationFailedReason.DOCUMENT_NOT_FOUND:
        "Không tìm thấy tài liệu",
    ApplicationFailedReason.DOCUMENT_NOT_UPLOADED:
        "Tài liệu không được tải lên",
    ApplicationFailedReason.DOCUMENT_UPLOAD_FAILED:
        "Tải lên tài liệu thất bại",
    ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED:
        "Xử lý tài liệu thất bại",
    ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_DATA:
        "Dữ liệu tài liệu không hợp lệ",
    ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_FORMAT:
        "Định dạng tài liệu không hợp lệ",
    ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED_INVALID_FILE_TYPE:
        "Loại tệp tài liệu không hợp lệ",
    ApplicationFailedReason.DOCUMENT_QUALITY_CHECK_FAILED:
        "Kiểm tra chất lượng tài liệu thất bại",
    ApplicationFailedReason.DOCUMENT_INFORMATION_MISSING:
        "Thông tin tài liệu không đầy đủ",
    ApplicationFailedReason.USER_CANCELLED:
        "Yêu cầu xử lý tài liệu đã bị hủy theo yêu cầu của người dùng",
    ApplicationFailedReason.USER_NOT_FOUND:
        "Không tìm thấy tài khoản người nộp hồ sơ",
})

DOCUMENT_TYPE_LABELS: Mapping[DocumentType, str] = MappingProxyType({
    DocumentType.TRANSCRIPT:  "học bạ",
    DocumentType.CERTIFICATE: "giấy chứng nhận",
    DocumentType.IDENTITY:    "giấy tờ tùy thân",
})

_DEFAULT_LABEL = "hồ sơ"


def message_for(reason: ApplicationFailedReason | str) -> str:
    """Localized message for a reason code; unknown codes fall back to the generic failure."""
    try:
        return REASON_MESSAGES[ApplicationFailedReason(reason)]
    except ValueError:
        return REASON_MESSAGES[ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED]


def label_for(document_type: DocumentType | str) -> str:
    try:
        return DOCUMENT_TYPE_LABELS[DocumentType(document_type)]
    except ValueError:
        return _DEFAULT_LABEL


# ---------------------------------------------------------------------------
# Rendered bodies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    text:    str
    html:    str
    chat:    str   # short HTML-formatted body for the messaging bot


def render_success(
    *,
    job_id:         str,
    application_id: str,
    document_type:  DocumentType | str,
    school_name:    str,
) -> RenderedMessage:
    label = label_for(document_type)
    subject = f"Thông báo xử lý {label} hoàn tất"
    text = (
        "Kính gửi Phụ huynh/Người giám hộ,\n\n"
        f"Hệ thống xin thông báo {label} của học sinh đã được xử lý thành công.\n\n"
        "Chi tiết:\n"
        f"- Mã hồ sơ: {application_id}\n"
        f"- Loại hồ sơ: {label}\n"
        f"- Mã xử lý: {job_id}\n\n"
        "Quý phụ huynh vui lòng đăng nhập vào hệ thống để xem chi tiết kết quả.\n\n"
        f"Trân trọng,\n{school_name}"
    )
    body = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: #2c3e50;">{html.escape(subject)}</h2>'
        "<p>Kính gửi Phụ huynh/Người giám hộ,</p>"
        f"<p>Hệ thống xin thông báo {html.escape(label)} của học sinh đã được xử lý thành công.</p>"
        "<ul>"
        f"<li>Mã hồ sơ: <strong>{html.escape(application_id)}</strong></li>"
        f"<li>Loại hồ sơ: <strong>{html.escape(label)}</strong></li>"
        f"<li>Mã xử lý: <strong>{html.escape(job_id)}</strong></li>"
        "</ul>"
        "<p>Quý phụ huynh vui lòng đăng nhập vào hệ thống để xem chi tiết kết quả.</p>"
        f"<p>Trân trọng,<br><strong>{html.escape(school_name)}</strong></p>"
        "</div>"
    )
    chat = (
        f"<b>{html.escape(subject)}</b>\n"
        f"Mã hồ sơ: {html.escape(application_id)}\n"
        f"Mã xử lý: <code>{html.escape(job_id)}</code>"
    )
    return RenderedMessage(subject=subject, text=text, html=body, chat=chat)


def render_failure(
    *,
    job_id:         str,
    application_id: str,
    document_type:  DocumentType | str,
    reason:         ApplicationFailedReason | str,
    school_name:    str,
) -> RenderedMessage:
    label = label_for(document_type)
    reason_text = message_for(reason)
    subject = f"Thông báo lỗi xử lý {label}"
    text = (
        "Kính gửi Phụ huynh/Người giám hộ,\n\n"
        f"Hệ thống gặp lỗi khi xử lý {label} của học sinh.\n\n"
        "Chi tiết:\n"
        f"- Mã hồ sơ: {application_id}\n"
        f"- Loại hồ sơ: {label}\n"
        f"- Mã xử lý: {job_id}\n"
        f"- Lỗi: {reason_text}\n\n"
        "Quý phụ huynh vui lòng kiểm tra lại hồ sơ và thử lại.\n"
        "Nếu cần hỗ trợ, vui lòng liên hệ với nhà trường.\n\n"
        f"Trân trọng,\n{school_name}"
    )
    body = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: #e74c3c;">{html.escape(subject)}</h2>'
        "<p>Kính gửi Phụ huynh/Người giám hộ,</p>"
        f"<p>Hệ thống gặp lỗi khi xử lý {html.escape(label)} của học sinh.</p>"
        "<ul>"
        f"<li>Mã hồ sơ: <strong>{html.escape(application_id)}</strong></li>"
        f"<li>Loại hồ sơ: <strong>{html.escape(label)}</strong></li>"
        f"<li>Mã xử lý: <strong>{html.escape(job_id)}</strong></li>"
        f"<li>Lỗi: <strong>{html.escape(reason_text)}</strong></li>"
        "</ul>"
        "<p>Quý phụ huynh vui lòng kiểm tra lại hồ sơ và thử lại.<br>"
        "Nếu cần hỗ trợ, vui lòng liên hệ với nhà trường.</p>"
        f"<p>Trân trọng,<br><strong>{html.escape(school_name)}</strong></p>"
        "</div>"
    )
    chat = (
        f"<b>{html.escape(subject)}</b>\n"
        f"Mã hồ sơ: {html.escape(application_id)}\n"
        f"Lỗi: {html.escape(reason_text)}"
    )
    return RenderedMessage(subject=subject, text=text, html=body, chat=chat)


def render_cancelled(
    *,
    job_id:         str,
    application_id: str,
    document_type:  DocumentType | str,
    school_name:    str,
) -> RenderedMessage:
    """Confirmation for a job the applicant cancelled; not worded as an error."""
    label = label_for(document_type)
    subject = f"Xác nhận hủy xử lý {label}"
    text = (
        "Kính gửi Phụ huynh/Người giám hộ,\n\n"
        f"Theo yêu cầu của Quý phụ huynh, nhà trường đã dừng xử lý {label} của học sinh.\n\n"
        "Chi tiết:\n"
        f"- Mã hồ sơ: {application_id}\n"
        f"- Loại hồ sơ: {label}\n"
        f"- Mã xử lý: {job_id}\n\n"
        "Quý phụ huynh có thể tải lên lại tài liệu bất cứ lúc nào.\n\n"
        f"Trân trọng,\n{school_name}"
    )
    body = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        f'<h2 style="color: #2c3e50;">{html.escape(subject)}</h2>'
        "<p>Kính gửi Phụ huynh/Người giám hộ,</p>"
        f"<p>Theo yêu cầu của Quý phụ huynh, nhà trường đã dừng xử lý {html.escape(label)} của học sinh.</p>"
        "<ul>"
        f"<li>Mã hồ sơ: <strong>{html.escape(application_id)}</strong></li>"
        f"<li>Loại hồ sơ: <strong>{html.escape(label)}</strong></li>"
        f"<li>Mã xử lý: <strong>{html.escape(job_id)}</strong></li>"
        "</ul>"
        "<p>Quý phụ huynh có thể tải lên lại tài liệu bất cứ lúc nào.</p>"
        f"<p>Trân trọng,<br><strong>{html.escape(school_name)}</strong></p>"
        "</div>"
    )
    chat = (
        f"<b>{html.escape(subject)}</b>\n"
        f"Mã hồ sơ: {html.escape(application_id)}\n"
        f"Mã xử lý: <code>{html.escape(job_id)}</code>"
    )
    return RenderedMessage(subject=subject, text=text, html=body, chat=chat)


def render_outcome(
    *,
    job_id:         str,
    application_id: str,
    document_type:  DocumentType | str,
    status:         JobStatus | str,
    reason:         ApplicationFailedReason | str | None,
    school_name:    str,
) -> RenderedMessage:
    """Pick the success, cancellation or failure template for a terminal status."""
    status = JobStatus(status)
    if status is JobStatus.COMPLETED:
        return render_success(
            job_id=job_id,
            application_id=application_id,
            document_type=document_type,
            school_name=school_name,
        )
    if status is JobStatus.USER_CANCELLED:
        return render_cancelled(
            job_id=job_id,
            application_id=application_id,
            document_type=document_type,
            school_name=school_name,
        )
    return render_failure(
        job_id=job_id,
        application_id=application_id,
        document_type=document_type,
        reason=reason or ApplicationFailedReason.DOCUMENT_PROCESSING_FAILED,
        school_name=school_name,
    )
