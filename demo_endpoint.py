"""
Start a local server for trying the invoice endpoints by hand.
"""

import uvicorn

if __name__ == "__main__":
    print("=" * 60)
    print("Starting CUFE Invoice Backend")
    print("=" * 60)
    print()
    print("API Endpoints:")
    print("   - Health Check:   GET  http://localhost:8000/health")
    print("   - Validate CUFE:  POST http://localhost:8000/invoices/validate-cufe")
    print("   - Process (SSE):  POST http://localhost:8000/invoices/process")
    print("   - Process PDF:    POST http://localhost:8000/invoices/process-pdf")
    print("   - API Docs:            http://localhost:8000/docs")
    print()
    print("Authentication:")
    print("   All endpoints (except /health) require:")
    print("   Authorization: Bearer <token>")
    print()
    print("Stream a CUFE with curl:")
    print('   curl -N -X POST "http://localhost:8000/invoices/process" \\')
    print('     -H "Authorization: Bearer <token>" \\')
    print('     -H "Content-Type: application/json" \\')
    print('     -d \'{"cufe_code": "<96 hex characters>"}\'')
    print()
    print("=" * 60)

    uvicorn.run(
        "cufe_backend.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
