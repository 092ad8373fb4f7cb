from warden.appeal.service import AppealService

__all__ = ["AppealService"]
