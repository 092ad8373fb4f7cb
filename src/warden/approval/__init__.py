from warden.approval.resolver import ApprovalResolver, skip_remaining, validate_email

__all__ = ["ApprovalResolver", "skip_remaining", "validate_email"]
