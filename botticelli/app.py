import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from botticelli import config
from botticelli.bots import BotRegistry
from botticelli.llm import Driver
from botticelli.routes import router
from botticelli.storage import JsonFileRepository

load_dotenv(Path(__file__).parent.parent / ".env")


def create_app(
    data_dir: Path | None = None,
    *,
    driver: Driver | None = None,
    bots: BotRegistry | None = None,
) -> FastAPI:
    resolved = data_dir or config.data_dir()
    cfg = config.get_config(resolved)
    logging.basicConfig(
        level=str(cfg["log_level"]).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Botticelli")
    app.state.config = cfg
    app.state.repository = JsonFileRepository(resolved)
    app.state.driver = driver or config.build_driver(cfg)
    app.state.bots = bots or BotRegistry()
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses BOTTICELLI_DATA_DIR or ./data)
app = create_app()


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "botticelli.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "13013")),
    )
