"""
Grouped view over ``S3Storage``.

``StorageInstance`` exposes the facade's operations under namespaces
(``storage.list.files()``, ``storage.delete.by_prefix()``...) and pins the
connection it was built with.
"""

from types import SimpleNamespace

from s3relay.storage.providers import ConnectionParams
from s3relay.storage.s3_storage import S3Storage


class StorageInstance:
    """Namespaced storage operations bound to one bucket."""

    def __init__(self, storage: S3Storage):
        self._storage = storage

        self.list = SimpleNamespace(
            files=storage.list_files,
            paginated=storage.list_files_paginated,
            pages=storage.iter_pages,
            by_extension=storage.list_files_by_extension,
            by_size=storage.list_files_by_size,
            by_date=storage.list_files_by_date,
            directories=storage.list_directories,
        )
        self.metadata = SimpleNamespace(
            get_info=storage.get_file_info,
            get_batch=storage.get_files_info,
            get_size=storage.get_file_size,
            get_content_type=storage.get_file_content_type,
            get_last_modified=storage.get_file_last_modified,
            get_custom=storage.get_file_metadata,
            set_custom=storage.set_file_metadata,
        )
        self.download = SimpleNamespace(
            presigned_url=storage.generate_presigned_download_url,
            url=storage.get_file_url,
        )
        self.upload = SimpleNamespace(
            presigned_url=storage.generate_presigned_upload_url,
        )
        self.validation = SimpleNamespace(
            exists=storage.file_exists,
            exists_with_info=storage.file_exists_with_info,
            validate_file=storage.validate_file,
            validate_files=storage.validate_files,
            connection=storage.validate_connection,
        )
        self.delete = SimpleNamespace(
            file=storage.delete_file,
            files=storage.delete_files,
            by_prefix=storage.delete_files_by_prefix,
        )

    @property
    def connection(self) -> ConnectionParams:
        return self._storage.connection

    @property
    def storage(self) -> S3Storage:
        return self._storage

    async def __aenter__(self) -> "StorageInstance":
        await self._storage.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self._storage.disconnect()
