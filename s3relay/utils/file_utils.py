"""
Local file helpers for the upload client.
"""

import mimetypes
from pathlib import Path
from typing import Dict

import aiofiles.os

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class FileUtils:
    """MIME detection and stat helpers for files about to be uploaded."""

    # Types missing from many platform MIME databases
    CUSTOM_MIME_TYPES: Dict[str, str] = {
        ".webp": "image/webp",
        ".avif": "image/avif",
        ".heic": "image/heic",
        ".glb": "model/gltf-binary",
        ".gltf": "model/gltf+json",
        ".md": "text/markdown",
        ".webm": "video/webm",
    }

    def __init__(self):
        mimetypes.init()
        for extension, mime_type in self.CUSTOM_MIME_TYPES.items():
            mimetypes.add_type(mime_type, extension)

    def get_content_type(self, file_path: Path) -> str:
        """
        Guess the MIME type of a file from its name.

        Args:
            file_path: Path to the file

        Returns:
            MIME type, ``application/octet-stream`` when unknown
        """
        mime_type, _ = mimetypes.guess_type(str(file_path))
        return mime_type or DEFAULT_CONTENT_TYPE

    async def get_file_size(self, file_path: Path) -> int:
        stat = await aiofiles.os.stat(file_path)
        return stat.st_size


file_utils = FileUtils()
