import logging
import math
from contextlib import asynccontextmanager
from typing import List, Optional

import anyio
import anyio.to_thread
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from application.handle_install_request import HandleInstallRequest
from domain.constants import (
    INSTALL_TIMEOUT,
    MAX_BODY_SIZE,
    MAX_CONCURRENT_INSTALLS,
    MAX_STDERR_BYTES,
)
from domain.errors import ArchiveError, InstallError, ResourceError, ValidationError
from domain.installer import DependencyInstaller, InstallerFactory
from infrastructure.workspace_manager import WorkspaceManager
from interfaces.request_decoder import RequestDecoder

logger = logging.getLogger(__name__)


class Config:
    def __init__(
        self,
        manager: str = "pip",
        max_body_size: int = MAX_BODY_SIZE,
        install_timeout: Optional[float] = INSTALL_TIMEOUT,
        max_concurrent_installs: Optional[int] = MAX_CONCURRENT_INSTALLS,
        max_stderr_bytes: int = MAX_STDERR_BYTES,
        workspace_root: Optional[str] = None,
        archive_name: Optional[str] = None,
        installer_args: Optional[List[str]] = None
    ):
        self.manager = manager
        self.max_body_size = max_body_size
        self.install_timeout = install_timeout
        self.max_concurrent_installs = max_concurrent_installs
        self.max_stderr_bytes = max_stderr_bytes
        self.workspace_root = workspace_root
        self.archive_name = archive_name
        self.installer_args = installer_args or []


class HealthResponseDTO(BaseModel):
    status: str = Field(..., description="Service status")
    manager: Optional[str] = Field(None, description="Package manager this instance runs")


config: Optional[Config] = None
installer: Optional[DependencyInstaller] = None
workspace_manager: Optional[WorkspaceManager] = None
request_decoder: Optional[RequestDecoder] = None
install_limiter: Optional[anyio.CapacityLimiter] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global install_limiter

    if config:
        # Needs a running event loop
        install_limiter = anyio.CapacityLimiter(config.max_concurrent_installs or math.inf)
    if config and installer:
        logger.info(
            "Serving %s installs; workspaces under %s",
            installer.name, config.workspace_root or "the system temp directory"
        )
    yield


app = FastAPI(
    title="DepInstallProxy Server",
    description="Installs submitted dependency manifests and streams back the result",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(StarletteHTTPException)
async def plain_text_http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render every HTTP error as a human readable plain text body."""
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code, headers=exc.headers)


@app.post("/install")
async def install_dependencies(request: Request):
    """
    Install the submitted manifest and stream the installed tree as a ZIP.

    Accepts either multipart/form-data with one field per descriptor file,
    or a JSON object mapping descriptor file names to their text.
    """
    if not config or not installer or not workspace_manager or not request_decoder or install_limiter is None:
        raise HTTPException(status_code=500, detail="Server not properly configured")

    handler = HandleInstallRequest(
        workspace_manager=workspace_manager,
        installer=installer,
        archive_name=config.archive_name
    )

    try:
        manifest = await request_decoder.decode(request)
    except ValidationError as e:
        handler.reject(e)
        logger.info("Rejected install request: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    try:
        # Queued installs wait here on the event loop, not in a worker thread
        response = await anyio.to_thread.run_sync(handler.handle, manifest, limiter=install_limiter)
    except ResourceError as e:
        logger.error("Workspace allocation failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    except InstallError as e:
        logger.warning("Install failed (%s): %s", e.reason, e)
        raise HTTPException(status_code=500, detail=str(e))
    except ArchiveError as e:
        logger.error("Archiving failed before streaming: %s", e)
        raise HTTPException(status_code=500, detail=f"Error zipping files: {e}")

    return StreamingResponse(
        response.body,
        media_type=response.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{response.filename}"'
        }
    )


@app.get("/health", response_model=HealthResponseDTO)
async def health_check():
    """Health check endpoint."""
    return HealthResponseDTO(status="healthy", manager=installer.name if installer else None)


def initialize_app(
    manager: str = "pip",
    max_body_size: int = MAX_BODY_SIZE,
    install_timeout: Optional[float] = INSTALL_TIMEOUT,
    max_concurrent_installs: Optional[int] = MAX_CONCURRENT_INSTALLS,
    max_stderr_bytes: int = MAX_STDERR_BYTES,
    workspace_root: Optional[str] = None,
    archive_name: Optional[str] = None,
    installer_args: Optional[List[str]] = None,
    custom_installer: Optional[DependencyInstaller] = None
):
    """
    Initialize the FastAPI application with configuration.

    custom_installer replaces the one built from manager, which lets tests
    run the pipeline without a real package manager.
    """
    global config, installer, workspace_manager, request_decoder

    config = Config(
        manager=manager,
        max_body_size=max_body_size,
        install_timeout=install_timeout,
        max_concurrent_installs=max_concurrent_installs,
        max_stderr_bytes=max_stderr_bytes,
        workspace_root=workspace_root,
        archive_name=archive_name,
        installer_args=installer_args
    )

    installer = custom_installer or InstallerFactory().get_installer(
        manager,
        custom_args=config.installer_args,
        timeout=config.install_timeout,
        max_stderr_bytes=config.max_stderr_bytes
    )
    workspace_manager = WorkspaceManager(root=workspace_root, prefix=f"{installer.name}_work_")
    request_decoder = RequestDecoder(
        manifest_name=installer.manifest_name,
        lockfile_name=installer.lockfile_name,
        max_body_size=max_body_size
    )

    return app
