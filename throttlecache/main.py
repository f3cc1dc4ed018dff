import uvicorn

from throttlecache.core.app_factory import create_app

app = create_app()


if __name__ == "__main__":
    uvicorn.run("throttlecache.main:app", host="0.0.0.0", port=8000, log_config=None)
