from typing import Dict, Any, List, Optional, Iterable
from pydantic import BaseModel
import base64
import os
import re
import uuid

import structlog

from streamchat.domain.errors import AnnotationResolutionError, TurnCancelled
from streamchat.domain.models.conversation_state import AnnotationMapping, ResolvedArtifact, TurnContext
from streamchat.domain.ports import ArtifactSource, DurableStore

logger = structlog.get_logger(__name__)

CONTENT_TYPES: Dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".csv": "text/csv",
    ".json": "application/json",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".html": "text/html",
    ".htm": "text/html",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".zip": "application/zip",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTAINER_FILE_CITATION = "container_file_citation"
FILE_CITATION = "file_citation"
FILE_PATH = "file_path"


def content_type_for(filename: str) -> str:
    _, extension = os.path.splitext(filename or "")
    return CONTENT_TYPES.get(extension.lower(), DEFAULT_CONTENT_TYPE)


def extension_for(filename: str, content_type: str) -> str:
    _, extension = os.path.splitext(filename or "")
    if extension:
        return extension.lower()
    for known, known_type in CONTENT_TYPES.items():
        if known_type == content_type:
            return known
    return ""


class AnnotationReference(BaseModel):
    """A file reference emitted by the model alongside its text"""
    kind: str
    file_id: str
    filename: Optional[str] = None
    container_id: Optional[str] = None

    @property
    def key(self) -> str:
        return self.file_id


class AnnotationResolver:
    """Copies model-referenced artifacts to durable storage and rewrites the text that points at them"""

    def __init__(self, source: ArtifactSource, store: DurableStore):
        self.source = source
        self.store = store

    @staticmethod
    def parse_annotation(annotation: Dict[str, Any]) -> Optional[AnnotationReference]:
        """Map an upstream annotation to a reference, or None for kinds that need no download"""

        kind = annotation.get("type")
        file_id = annotation.get("file_id")
        if kind not in (CONTAINER_FILE_CITATION, FILE_CITATION, FILE_PATH) or not file_id:
            return None
        if kind == CONTAINER_FILE_CITATION and not annotation.get("container_id"):
            return None
        return AnnotationReference(
            kind=kind,
            file_id=file_id,
            filename=annotation.get("filename"),
            container_id=annotation.get("container_id"),
        )

    async def _upload(self, context: TurnContext, filename: str, data: bytes, source_id: str) -> ResolvedArtifact:
        content_type = content_type_for(filename)
        durable_name = f"{uuid.uuid4()}{extension_for(filename, content_type)}"
        url = await context.cancel_token.run(
            self.store.upload(context.thread_id, durable_name, data, content_type)
        )
        return ResolvedArtifact(source_id=source_id, filename=filename, url=url, content_type=content_type)

    async def _fetch(self, reference: AnnotationReference, context: TurnContext) -> ResolvedArtifact:
        try:
            if reference.kind == CONTAINER_FILE_CITATION:
                data = await context.cancel_token.run(
                    self.source.download_container_file(reference.container_id, reference.file_id)
                )
                filename = reference.filename or reference.file_id
            else:
                data, original_name = await context.cancel_token.run(self.source.download_file(reference.file_id))
                filename = reference.filename or original_name or reference.file_id

            if not data:
                raise AnnotationResolutionError(f"Artifact {reference.file_id} is empty")
            return await self._upload(context, filename, data, reference.file_id)

        except (TurnCancelled, AnnotationResolutionError):
            raise
        except Exception as e:
            raise AnnotationResolutionError(f"Could not resolve artifact {reference.file_id}: {e}") from e

    async def resolve(self, reference: AnnotationReference, context: TurnContext) -> Optional[ResolvedArtifact]:
        """Download and re-upload one referenced artifact; None when that fails"""

        try:
            artifact = await self._fetch(reference, context)
        except AnnotationResolutionError as e:
            logger.warning("Annotation resolution failed", file_id=reference.file_id, kind=reference.kind, error=str(e))
            return None

        logger.info(
            "Annotation resolved",
            file_id=reference.file_id,
            filename=artifact.filename,
            content_type=artifact.content_type,
        )
        return artifact

    async def resolve_url(self, url: str, context: TurnContext, filename: Optional[str] = None) -> Optional[ResolvedArtifact]:
        """Copy a file exposed by URL (e.g. a code-execution image output)"""

        try:
            data = await context.cancel_token.run(self.source.download_url(url))
            if not data:
                raise AnnotationResolutionError(f"Artifact at {url} is empty")
            return await self._upload(context, filename or "output.png", data, url)
        except TurnCancelled:
            raise
        except Exception as e:
            logger.warning("Output download failed", url=url, error=str(e))
            return None

    async def store_image(self, image_base64: str, context: TurnContext, source_id: str) -> Optional[ResolvedArtifact]:
        """Persist a base64 image produced by hosted image generation"""

        try:
            data = base64.b64decode(image_base64)
            return await self._upload(context, f"{uuid.uuid4()}.png", data, source_id)
        except TurnCancelled:
            raise
        except Exception as e:
            logger.warning("Generated image could not be stored", source_id=source_id, error=str(e))
            return None

    @staticmethod
    def markup_for(artifact: ResolvedArtifact) -> str:
        if artifact.is_image:
            return f"![Generated image]({artifact.url})"
        return f"[Download file]({artifact.url})"

    @staticmethod
    def build_mappings(text: str, artifacts: Iterable[ResolvedArtifact]) -> List[AnnotationMapping]:
        """Find every reference to the resolved artifacts in `text`

        A sandbox path ending in the artifact's filename is replaced with the bare
        URL. Only when no such path exists is a literal filename replaced with
        image or download markup.
        """

        mappings: Dict[str, AnnotationMapping] = {}
        for artifact in artifacts:
            filename = os.path.basename(artifact.filename)
            if not filename:
                continue

            pattern = re.compile(r"sandbox:[^\s()\[\]<>\"']*?/" + re.escape(filename) + r"(?![\w-])")
            sandbox_paths = set(pattern.findall(text))
            for path in sandbox_paths:
                mappings[path] = AnnotationMapping(
                    reference_key=path,
                    resolved_url=artifact.url,
                    replacement=artifact.url,
                )

            if not sandbox_paths and filename in text:
                mappings[filename] = AnnotationMapping(
                    reference_key=filename,
                    resolved_url=artifact.url,
                    replacement=AnnotationResolver.markup_for(artifact),
                )

        return list(mappings.values())

    @staticmethod
    def apply_mappings(text: str, mappings: List[AnnotationMapping]) -> str:
        """Replace every literal occurrence of each reference key in one pass"""

        if not mappings or not text:
            return text

        by_key = {mapping.reference_key: mapping.replacement for mapping in mappings}
        keys = sorted(by_key, key=len, reverse=True)
        pattern = re.compile("|".join(re.escape(key) for key in keys))
        return pattern.sub(lambda match: by_key[match.group(0)], text)
