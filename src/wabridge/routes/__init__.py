"""
HTTP and WebSocket routes.

- health_routes: /healthz probe and /status snapshot
- message_routes: send-message, chats, group-participants
- socket_routes: /ws live session events
"""
