from niya.models.chat import Chat, Message
from niya.models.user import User

__all__ = ["Chat", "Message", "User"]
