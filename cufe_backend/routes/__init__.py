"""
FastAPI routers.

Every protected route resolves the caller with get_authenticated_user and
reports failures as HTTPException(detail={"error": ..., "details": ...}).
"""
