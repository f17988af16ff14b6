import uvicorn

from .main import config


if __name__ == "__main__":
    uvicorn.run("codestream.api.main:app", host="0.0.0.0", port=config.port)
