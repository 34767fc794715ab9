import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from element_index.api.index import router as index_router
from element_index.core.dependencies import build_index_manager, get_data_dir, load_index_config
from element_index.services.index_manager import UnifiedIndexManager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def create_app(manager: Optional[UnifiedIndexManager] = None) -> FastAPI:
    """
    Build the application. A manager passed in is used as-is and not closed
    on shutdown; otherwise one is built from <data dir>/index.json at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "index_manager", None) is None:
            data_dir = get_data_dir()
            config = load_index_config(data_dir)
            owned = build_index_manager(config, data_dir=data_dir)
            app.state.index_manager = owned
            logger.info(f"Element index started (data dir: {data_dir})")
        app.state.index_manager.start()
        try:
            yield
        finally:
            if owned is not None:
                await owned.aclose()
                app.state.index_manager = None

    app = FastAPI(
        title="Element Index",
        version="0.1.0",
        description="Unified index and federated search over local, portfolio and collection elements.",
        lifespan=lifespan,
    )
    app.state.index_manager = manager

    @app.get("/health")
    async def health(request: Request) -> dict:
        """
        Lightweight health check endpoint with per-source status.
        """
        index_manager: Optional[UnifiedIndexManager] = request.app.state.index_manager
        if index_manager is None:
            return {"status": "starting"}
        return index_manager.health()

    app.include_router(index_router, prefix="/index", tags=["index"])
    return app


app = create_app()


if __name__ == "__main__":
    """
    Allow running `python -m element_index.main` to start the Uvicorn development server.
    """
    import uvicorn

    uvicorn.run(
        "element_index.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
