from .session import ChatSession
from .stomp import StompClient, Frame
from .api import ApiClient
from .messages import ChatMessage, ReadStatus, MessageLog
from .rooms import Room, RoomUpdate, RoomUpdateAggregator
from .subscriptions import SubscriptionRegistry
from .throttle import ReadReceiptThrottler

__version__ = '0.1.0'
