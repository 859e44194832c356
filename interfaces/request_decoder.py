import json
from typing import Any, AsyncIterator, Dict, Optional, Union

from fastapi import Request
from starlette.datastructures import UploadFile
from starlette.formparsers import MultiPartException, MultiPartParser

from application.dtos import Manifest
from domain.constants import MAX_BODY_SIZE
from domain.errors import ValidationError


class RequestDecoder:
    """Turns multipart uploads and JSON bodies into the same Manifest."""

    def __init__(self, manifest_name: str, lockfile_name: str, max_body_size: int = MAX_BODY_SIZE):
        self.manifest_name = manifest_name
        self.lockfile_name = lockfile_name
        self.max_body_size = max_body_size

    async def decode(self, request: Request) -> Manifest:
        """
        Decode the request body into a Manifest.

        Raises:
            ValidationError: If the body is malformed, too large or lacks the manifest
        """
        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_body_size:
            raise ValidationError(f"Request body exceeds {self.max_body_size} bytes")

        content_type = request.headers.get("content-type", "")
        if content_type.startswith("multipart/form-data"):
            fields = await self._read_multipart(request)
        else:
            fields = await self._read_json(request)

        return self.build_manifest(fields)

    def build_manifest(self, fields: Dict[str, Any]) -> Manifest:
        """Build a Manifest from decoded field values, keyed by file name."""
        primary = fields.get(self.manifest_name)
        lockfile = fields.get(self.lockfile_name)

        if primary is not None and not isinstance(primary, str):
            raise ValidationError(f"{self.manifest_name} must be a string")
        if lockfile is not None and not isinstance(lockfile, str):
            raise ValidationError(f"{self.lockfile_name} must be a string")
        if not primary:
            raise ValidationError(f"Missing {self.manifest_name} in request")

        return Manifest(
            primary_name=self.manifest_name,
            primary_content=primary,
            lockfile_name=self.lockfile_name,
            lockfile_content=lockfile or None
        )

    async def _bounded_stream(self, request: Request) -> AsyncIterator[bytes]:
        """Yield the body, failing as soon as more than max_body_size bytes arrive."""
        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > self.max_body_size:
                raise ValidationError(f"Request body exceeds {self.max_body_size} bytes")
            yield chunk

    async def _read_multipart(self, request: Request) -> Dict[str, Optional[str]]:
        parser = MultiPartParser(request.headers, self._bounded_stream(request))
        try:
            form = await parser.parse()
        except MultiPartException as e:
            raise ValidationError(f"Error parsing multipart form: {e}") from e

        try:
            fields = {}
            for name in (self.manifest_name, self.lockfile_name):
                value = form.get(name)
                if value is not None:
                    fields[name] = self._decode_text(name, await self._read_field(value))
            return fields
        finally:
            await form.close()

    @staticmethod
    async def _read_field(value: Union[UploadFile, str]) -> bytes:
        if isinstance(value, str):
            return value.encode("utf-8")
        return await value.read()

    async def _read_json(self, request: Request) -> Dict[str, Any]:
        body = bytearray()
        async for chunk in self._bounded_stream(request):
            body.extend(chunk)

        try:
            fields = json.loads(self._decode_text("request body", bytes(body)))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Error decoding request body: {e}") from e
        except RecursionError as e:
            raise ValidationError("Error decoding request body: nesting too deep") from e

        if not isinstance(fields, dict):
            raise ValidationError("Request body must be a JSON object")
        return fields

    @staticmethod
    def _decode_text(name: str, content: bytes) -> str:
        try:
            return content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(f"{name} is not valid UTF-8") from e
