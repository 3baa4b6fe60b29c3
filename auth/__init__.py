"""
auth — User authentication module.

Provides:
  • Signed bearer token creation & verification (REST and WebSocket)
  • Password hashing (bcrypt)
  • Register / Login / Verify API routes
  • ``get_current_user_id`` FastAPI dependency
"""
