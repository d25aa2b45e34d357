"""Fill a document template and publish it together with a PDF export.

Copy, text replacement and export are fatal (``RenderError`` tagged with the
step); relocation, image placement and making the doc public degrade to a
logged warning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from app.core.errors import RenderError
from app.services.documents.adapter import DocumentAdapter
from app.services.local_uploads import discard, stage_bytes
from app.services.storage.adapter import StorageAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RenderedDocument:
    pdf_url: str
    doc_url: str


@dataclass(frozen=True, slots=True)
class ImagePlacement:
    token: str
    image_uri: str


def document_title(kind: str, ordinal: int, subject: str) -> str:
    return f"Formulir {kind} {ordinal:04d} - {subject}"


class DocumentRenderer:
    def __init__(
        self,
        documents: DocumentAdapter,
        storage: StorageAdapter,
        *,
        staging_dir: Path,
        documents_folder_id: str = "",
        pdf_folder_id: str = "",
        image_width_pt: float = 400,
        image_height_pt: float = 225,
        strict_placeholders: bool = False,
    ) -> None:
        self.documents = documents
        self.storage = storage
        self.staging_dir = staging_dir
        self.documents_folder_id = documents_folder_id
        self.pdf_folder_id = pdf_folder_id
        self.image_width_pt = image_width_pt
        self.image_height_pt = image_height_pt
        self.strict_placeholders = strict_placeholders

    async def render(
        self,
        kind: str,
        template_id: str,
        ordinal: int,
        subject: str,
        replacements: Mapping[str, str],
        images: Sequence[ImagePlacement] = (),
    ) -> RenderedDocument:
        title = document_title(kind, ordinal, subject)

        try:
            doc_id = await self.documents.copy_template(template_id, title)
        except Exception as exc:
            raise RenderError("copy", f"Failed to copy template for {title!r}: {exc}") from exc
        doc_url = self.documents.document_url(doc_id)

        if self.documents_folder_id:
            try:
                await self.documents.move_to_folder(doc_id, self.documents_folder_id)
            except Exception as exc:
                logger.warning("Could not move %s into the documents folder: %s", doc_id, exc)

        await self._replace_text(doc_id, title, replacements)

        for placement in images:
            await self._place_image(doc_id, placement)

        try:
            await self.documents.grant_public_read(doc_id)
        except Exception as exc:
            logger.warning("Could not make %s public: %s", doc_id, exc)

        pdf_url = await self._publish_pdf(doc_id, title)
        logger.info("Rendered %s: doc=%s pdf=%s", title, doc_url, pdf_url)
        return RenderedDocument(pdf_url=pdf_url, doc_url=doc_url)

    async def _replace_text(self, doc_id: str, title: str, replacements: Mapping[str, str]) -> None:
        try:
            changed = await self.documents.replace_all_text(doc_id, replacements)
        except Exception as exc:
            raise RenderError("replace", f"Failed to fill placeholders in {title!r}: {exc}") from exc

        unmatched = sorted(token for token in replacements if not changed.get(token))
        if not unmatched:
            return
        if self.strict_placeholders:
            raise RenderError(
                "replace",
                f"Template for {title!r} is missing placeholders",
                unmatched=unmatched,
            )
        logger.info("Placeholders not present in %r: %s", title, ", ".join(unmatched))

    async def _place_image(self, doc_id: str, placement: ImagePlacement) -> None:
        if not placement.image_uri:
            logger.debug("No image for %s, leaving placeholder", placement.token)
            return
        try:
            index = await self.documents.find_placeholder(doc_id, placement.token)
            if index is None:
                logger.warning("Image placeholder %s not found in %s", placement.token, doc_id)
                return
            await self.documents.replace_with_image(
                doc_id,
                index,
                placement.token,
                placement.image_uri,
                self.image_width_pt,
                self.image_height_pt,
            )
        except Exception as exc:
            logger.warning("Could not insert image at %s in %s: %s", placement.token, doc_id, exc)

    async def _publish_pdf(self, doc_id: str, title: str) -> str:
        staged: Path | None = None
        try:
            content = await self.documents.export_pdf(doc_id)
            staged = stage_bytes(content, self.staging_dir, f"{title}.pdf")
            return await self.storage.upload_public(
                staged, f"{title}.pdf", "application/pdf", self.pdf_folder_id or None
            )
        except Exception as exc:
            raise RenderError("export", f"Failed to export {title!r} as PDF: {exc}") from exc
        finally:
            discard(staged)
