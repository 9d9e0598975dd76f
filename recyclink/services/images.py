import asyncio
import io
import math
import time
from collections.abc import Collection, Sequence
from datetime import datetime, timezone

from loguru import logger
from PIL import Image, ImageOps, UnidentifiedImageError

from recyclink.config import settings
from recyclink.errors import DecodeFailure, InvalidType, RecyclinkError, ServiceError, TooLarge, TooManyFiles
from recyclink.models.image import ImageFile, ResizedImage
from recyclink.session import Session

TARGET_CONTENT_TYPE = "image/jpeg"


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _format_megabytes(max_bytes: int) -> str:
    return f"{max_bytes / (1024 * 1024):g}MB"


def validate(
    file: ImageFile,
    allowed_types: Collection[str] | None = None,
    max_bytes: int | None = None,
) -> None:
    allowed = set(allowed_types if allowed_types is not None else settings.allowed_image_types)
    limit = max_bytes if max_bytes is not None else settings.max_upload_bytes
    if file.content_type not in allowed:
        raise InvalidType("Invalid file type. Only JPG and PNG files are allowed.")
    if file.size > limit:
        raise TooLarge(f"File is too large. Maximum size is {_format_megabytes(limit)}.")


def fit_within(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    # landscape images are bounded by width only, everything else by height only
    if width > height:
        if width > max_width:
            height = _round_half_up((height * max_width) / width)
            width = max_width
    else:
        if height > max_height:
            width = _round_half_up((width * max_height) / height)
            height = max_height
    return width, height


def _flatten(image: Image.Image) -> Image.Image:
    if image.mode == "P" and "transparency" in image.info:
        image = image.convert("RGBA")
    if image.mode in ("RGBA", "LA"):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (0, 0, 0))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return image.convert("RGB")


def _encode(data: bytes, max_width: int, max_height: int, quality: float) -> tuple[bytes, int, int, int, int]:
    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            decoded = ImageOps.exif_transpose(source)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise DecodeFailure(f"Could not decode image: {exc}") from exc

    original_width, original_height = decoded.size
    width, height = fit_within(original_width, original_height, max_width, max_height)
    surface = _flatten(decoded)
    if (width, height) != surface.size:
        surface = surface.resize((width, height), resample=Image.Resampling.BILINEAR, reducing_gap=None)

    buffer = io.BytesIO()
    surface.save(buffer, format="JPEG", quality=max(1, min(95, _round_half_up(quality * 100))))
    return buffer.getvalue(), width, height, original_width, original_height


async def resize(
    file: ImageFile,
    max_width: int | None = None,
    max_height: int | None = None,
    quality: float | None = None,
) -> ResizedImage:
    if not file.content_type.startswith("image/"):
        raise InvalidType("Invalid file type. Please provide an image.")
    max_width = max_width or settings.image_max_width
    max_height = max_height or settings.image_max_height
    quality = quality if quality is not None else settings.image_quality
    if not 0 < quality <= 1:
        raise ValueError("quality must be in (0, 1]")

    data, width, height, original_width, original_height = await asyncio.to_thread(
        _encode, file.data, max_width, max_height, quality
    )
    logger.debug(
        "Image resized name={} original={}x{} output={}x{} quality={} size_bytes={}",
        file.name,
        original_width,
        original_height,
        width,
        height,
        quality,
        len(data),
    )
    return ResizedImage(
        name=file.name,
        content_type=TARGET_CONTENT_TYPE,
        data=data,
        last_modified=datetime.now(timezone.utc),
        width=width,
        height=height,
        original_width=original_width,
        original_height=original_height,
    )


def destination_name(base_path: str, file: ImageFile, index: int) -> str:
    extension = file.name.rsplit(".", 1)[-1].lower()
    return f"{base_path.rstrip('/')}/{time.time_ns() // 1_000_000}-{index}.{extension}"


async def _prepare_and_put(
    session: Session,
    base_path: str,
    file: ImageFile,
    index: int,
    max_width: int,
    max_height: int,
    quality: float,
) -> str:
    optimized = await resize(file, max_width, max_height, quality)
    path = destination_name(base_path, file, index)
    locator = await session.objects.put(path, optimized.data, optimized.content_type)
    session.logger.info(
        "Upload stored index={} name={} path={} size_bytes={}",
        index,
        file.name,
        path,
        optimized.size,
    )
    return locator


async def upload_batch(
    session: Session,
    base_path: str,
    files: Sequence[ImageFile],
    max_width: int | None = None,
    max_height: int | None = None,
    quality: float | None = None,
    max_files: int | None = None,
) -> list[str]:
    limit = max_files if max_files is not None else session.settings.max_batch_files
    if len(files) > limit:
        session.logger.warning("Upload rejected file_count={} max_files={}", len(files), limit)
        session.notify_error(f"Maximum {limit} files allowed")
        raise TooManyFiles(f"Maximum {limit} files allowed")

    max_width = max_width or session.settings.image_max_width
    max_height = max_height or session.settings.image_max_height
    quality = quality if quality is not None else session.settings.image_quality
    session.logger.info("Upload batch requested base_path={} file_count={}", base_path, len(files))
    try:
        for file in files:
            validate(file, session.settings.allowed_image_types, session.settings.max_upload_bytes)
        locators = await asyncio.gather(
            *(
                _prepare_and_put(session, base_path, file, index, max_width, max_height, quality)
                for index, file in enumerate(files)
            )
        )
    except RecyclinkError as exc:
        session.logger.warning("Upload batch rejected base_path={} error={}", base_path, str(exc))
        session.notify_error(str(exc))
        raise
    except Exception as exc:
        session.logger.exception("Upload batch failed base_path={} error={}", base_path, str(exc))
        session.notify_error("Failed to upload files")
        raise ServiceError(f"Failed to upload files: {exc}") from exc

    session.logger.info("Upload batch finished base_path={} uploaded={}", base_path, len(locators))
    return list(locators)


async def delete_upload(session: Session, path: str) -> None:
    try:
        await session.objects.delete(path)
    except Exception as exc:
        session.logger.exception("Delete failed path={} error={}", path, str(exc))
        session.notify_error("Failed to delete file")
        raise ServiceError("Failed to delete file") from exc
    session.logger.info("Upload deleted path={}", path)
