from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse
import uvicorn

from config.settings import settings
from models.schemas import (
    AcceptedFile,
    FilenameCheckRequest,
    FilenameCheckResponse,
    ReasonCode,
    UploadAccepted,
    UploadResponse,
    VerdictAccepted,
)
from utils.logger import get_logger
from workflows.upload_pipeline import UploadPipeline

app = FastAPI(title="Upload Screening Service", version="1.0.0")
logger = get_logger(__name__)

# One pipeline (and one ClamAV client) for the whole process
pipeline = UploadPipeline.from_settings(settings)

REJECTION_STATUS = {
    ReasonCode.SCAN_UNAVAILABLE: 503,
}


def get_pipeline() -> UploadPipeline:
    return pipeline


def human_readable_size(size: int) -> str:
    if size == 0:
        return "0 B"

    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    unit_index = 0

    while value >= 1024 and unit_index < len(units) - 1:
        value /= 1024
        unit_index += 1

    return f"{round(value, 2)} {units[unit_index]}"


@app.post("/upload", status_code=201, response_model=UploadResponse)
async def upload_file(
    file: Optional[UploadFile] = File(default=None),
    upload_pipeline: UploadPipeline = Depends(get_pipeline),
):
    """
    Screen an uploaded file: size, type, filename and virus scan.
    Accepted files are handed back for storage; rejections carry a reason code.
    """
    try:
        # spooled temp file; size and content are read from it, never loaded whole
        data = file.file if file is not None else None
        filename = file.filename if file is not None else None
        declared_type = file.content_type if file is not None else None

        decision = await upload_pipeline.process(data, filename, declared_type)

        if not isinstance(decision, UploadAccepted):
            return JSONResponse(
                status_code=REJECTION_STATUS.get(decision.reason_code, 422),
                content={
                    "message": decision.message,
                    "reason": decision.reason_code.value,
                    "detail": decision.detail,
                },
            )

        flags = upload_pipeline.classifier.describe(decision.content_type)
        outcome = decision.scan_outcome

        return UploadResponse(
            message="File passed validation",
            file=AcceptedFile(
                filename=decision.filename,
                content_type=decision.content_type,
                file_size=decision.file_size,
                human_readable_size=human_readable_size(decision.file_size),
                is_image=flags["is_image"],
                is_text=flags["is_text"],
                scan_status=outcome.status,
                scan_skipped=getattr(outcome, "skipped", False),
                scanned_at=outcome.scanned_at,
                warning=decision.warning,
            ),
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"File upload error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/filenames/validate", response_model=FilenameCheckResponse)
async def validate_filename(
    request: FilenameCheckRequest,
    upload_pipeline: UploadPipeline = Depends(get_pipeline),
):
    """
    Check a filename (e.g. a rename target) against the upload filename policy
    """
    verdict = upload_pipeline.filename_validator.validate(request.filename)

    if isinstance(verdict, VerdictAccepted):
        return FilenameCheckResponse(
            valid=True,
            filename=request.filename,
            content_type=verdict.normalized_content_type,
        )

    return FilenameCheckResponse(
        valid=False,
        filename=request.filename,
        reason=verdict.reason_code,
        message=verdict.message,
    )


@app.get("/health")
async def health_check(upload_pipeline: UploadPipeline = Depends(get_pipeline)):
    """
    Health check endpoint
    """
    engine = upload_pipeline.policy_engine
    scanner = "skipped" if engine.config.skip_scanning else (
        "available" if await engine.client.ping() else "unavailable"
    )

    return {
        "status": "ok",
        "service": "upload-screening",
        "version": app.version,
        "scan_mode": engine.config.strictness,
        "scanner": scanner,
    }


@app.get("/health/scanner")
async def scanner_health(upload_pipeline: UploadPipeline = Depends(get_pipeline)):
    """
    ClamAV daemon diagnostics: ping, version and stats
    """
    client = upload_pipeline.policy_engine.client
    available = await client.ping()

    return {
        "target": client.target,
        "available": available,
        "version": await client.version() if available else None,
        "stats": await client.stats() if available else None,
    }


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
