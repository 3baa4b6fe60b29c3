"""
Real-time notifications.

Authenticated WebSocket sessions are tracked per user by
``ConnectionRegistry``; ``NotificationGateway`` fans application events
(reminders) out to every live session of the target user.
"""
