from app.accounts.models import PasswordResetToken, User, UserInvitation

__all__ = [
    "User",
    "PasswordResetToken",
    "UserInvitation",
]
