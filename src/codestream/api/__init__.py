"""
Expose the FastAPI application instance.

Importing this module will create a FastAPI application and register
all routes.  The service can be run with Uvicorn directly or through the
``-m`` invocation:

```sh
python -m codestream.api
```
"""

from .main import app

__all__ = ["app"]
