"""Main FastAPI application entry point for the video RAG service.

The application itself lives in src.api.main; this module only starts the
server.
"""

from src.api.main import app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.main:app", host="127.0.0.1", port=8030, reload=True)
