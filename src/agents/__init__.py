"""Outbound messaging.

Modules:
    notify_agent   — Quote lifecycle e-mails (created / signed) via Resend
"""
