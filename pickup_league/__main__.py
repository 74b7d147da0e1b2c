import uvicorn

from .api import app, settings


if __name__ == "__main__":
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
