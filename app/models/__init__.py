from app.accounts.models import PasswordResetToken, User, UserInvitation
from app.crm.models import (
	Appointment,
	CalendarReminder,
	Crew,
	CrewMember,
	Customer,
	JobCrewAssignment,
	Lead,
	LeadNote,
	Notification,
	Quote,
	QuoteFile,
	Task,
)
from app.messaging.models import Conversation, ConversationParticipant, Message

__all__ = [
	"Appointment",
	"CalendarReminder",
	"Conversation",
	"ConversationParticipant",
	"Crew",
	"CrewMember",
	"Customer",
	"JobCrewAssignment",
	"Lead",
	"LeadNote",
	"Message",
	"Notification",
	"PasswordResetToken",
	"Quote",
	"QuoteFile",
	"Task",
	"User",
	"UserInvitation",
]
