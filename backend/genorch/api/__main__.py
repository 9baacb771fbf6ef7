"""API server entry point for python -m genorch.api"""
import uvicorn
from genorch.config import settings

if __name__ == "__main__":
    uvicorn.run(
        "genorch.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=False,
    )
