import uvicorn

from gradesync.core.app_factory import create_app

app = create_app()


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    uvicorn.run("gradesync.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
