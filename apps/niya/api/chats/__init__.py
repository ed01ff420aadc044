from niya.api.chats.routes import router

__all__ = ["router"]
