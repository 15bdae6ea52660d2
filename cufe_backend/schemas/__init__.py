"""
Pydantic schemas for the invoice pipeline and its API.

All FastAPI endpoints use explicit Pydantic models. Stream events from the
acquisition service are typed too (see acquisition.StreamEvent).
"""
