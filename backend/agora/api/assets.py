from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse

from agora.config import Settings, get_app_settings
from agora.utils.auth import CurrentIdentity

router = APIRouter(prefix="/images", tags=["Assets"])


@router.get("/{asset_path:path}")
async def get_asset(
    asset_path: str,
    identity: CurrentIdentity,
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> FileResponse:
    """Serve a file from the assets directory to logged-in users only."""
    root = Path(settings.assets_dir).resolve()
    path = (root / asset_path).resolve()

    if not path.is_relative_to(root):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid path",
        )

    if not path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Asset not found",
        )

    return FileResponse(
        path=str(path),
        headers={"Cache-Control": "private, max-age=86400"},
    )
