from wabot.models.business import Business
from wabot.models.cache_entry import CacheEntry
from wabot.models.conversation import Conversation
from wabot.models.faq_embedding import FaqEmbedding
from wabot.models.intent import Intent, IntentExample
from wabot.models.message import Message, MessageDedup

__all__ = [
    "Business",
    "CacheEntry",
    "Conversation",
    "FaqEmbedding",
    "Intent",
    "IntentExample",
    "Message",
    "MessageDedup",
]
