"""
Applicant notifications: localized message catalogue, outcome dispatcher
and the per-channel senders (SMTP email, Telegram Bot API).
"""
