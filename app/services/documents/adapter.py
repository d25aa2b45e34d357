from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Iterator, Mapping


def utf16_length(text: str) -> int:
    """Google Docs indexes are UTF-16 code units."""
    return len(text.encode("utf-16-le")) // 2


class DocumentAdapter(ABC):
    """Template-based document operations addressed by opaque document ids."""

    provider: str = "google"

    @abstractmethod
    async def copy_template(self, template_id: str, title: str) -> str:
        """Duplicate ``template_id`` as a new document titled ``title``; return its id."""

    @abstractmethod
    def document_url(self, doc_id: str) -> str:
        pass

    @abstractmethod
    async def move_to_folder(self, doc_id: str, folder_id: str) -> None:
        pass

    @abstractmethod
    async def replace_all_text(self, doc_id: str, replacements: Mapping[str, str]) -> dict[str, int]:
        """Case-sensitive replace-all of every token in one batch.

        Returns the number of occurrences changed per token.
        """

    @abstractmethod
    async def find_placeholder(self, doc_id: str, token: str) -> int | None:
        """Index of the first occurrence of ``token`` in document order, or ``None``."""

    @abstractmethod
    async def replace_with_image(
        self,
        doc_id: str,
        index: int,
        token: str,
        image_uri: str,
        width_pt: float,
        height_pt: float,
    ) -> None:
        """Delete exactly ``token`` at ``index`` and anchor an inline image there."""

    @abstractmethod
    async def grant_public_read(self, file_id: str) -> None:
        pass

    @abstractmethod
    async def export_pdf(self, doc_id: str) -> bytes:
        pass


def _text_runs(content: list[dict[str, Any]]) -> Iterator[tuple[int, str]]:
    for element in content or []:
        paragraph = element.get("paragraph")
        if paragraph:
            for item in paragraph.get("elements", []):
                run = item.get("textRun")
                if run and "startIndex" in item:
                    yield item["startIndex"], run.get("content", "")
        table = element.get("table")
        if table:
            for row in table.get("tableRows", []):
                for cell in row.get("tableCells", []):
                    yield from _text_runs(cell.get("content", []))


class GoogleDocsAdapter(DocumentAdapter):
    def __init__(self, drive_service, docs_service):
        self.provider = "google"
        self._files = drive_service.files()
        self._permissions = drive_service.permissions()
        self._documents = docs_service.documents()

    def document_url(self, doc_id: str) -> str:
        return f"https://docs.google.com/document/d/{doc_id}/edit"

    async def copy_template(self, template_id: str, title: str) -> str:
        request = self._files.copy(fileId=template_id, body={"name": title}, fields="id")
        copied = await asyncio.to_thread(request.execute)
        return copied["id"]

    def _move(self, doc_id: str, folder_id: str) -> None:
        current = self._files.get(fileId=doc_id, fields="parents").execute()
        self._files.update(
            fileId=doc_id,
            addParents=folder_id,
            removeParents=",".join(current.get("parents", [])),
            fields="id, parents",
        ).execute()

    async def move_to_folder(self, doc_id: str, folder_id: str) -> None:
        await asyncio.to_thread(self._move, doc_id, folder_id)

    async def replace_all_text(self, doc_id: str, replacements: Mapping[str, str]) -> dict[str, int]:
        tokens = list(replacements)
        requests = [
            {
                "replaceAllText": {
                    "containsText": {"text": token, "matchCase": True},
                    "replaceText": replacements[token],
                }
            }
            for token in tokens
        ]
        if not requests:
            return {}
        call = self._documents.batchUpdate(documentId=doc_id, body={"requests": requests})
        response = await asyncio.to_thread(call.execute)
        replies = (response or {}).get("replies", [])
        changed: dict[str, int] = {}
        for token, reply in zip(tokens, replies):
            changed[token] = int((reply or {}).get("replaceAllText", {}).get("occurrencesChanged", 0))
        return changed

    async def find_placeholder(self, doc_id: str, token: str) -> int | None:
        document = await asyncio.to_thread(self._documents.get(documentId=doc_id).execute)
        body = (document or {}).get("body", {})
        for start_index, text in _text_runs(body.get("content", [])):
            position = text.find(token)
            if position != -1:
                return start_index + utf16_length(text[:position])
        return None

    async def replace_with_image(
        self,
        doc_id: str,
        index: int,
        token: str,
        image_uri: str,
        width_pt: float,
        height_pt: float,
    ) -> None:
        requests = [
            {
                "deleteContentRange": {
                    "range": {"startIndex": index, "endIndex": index + utf16_length(token)}
                }
            },
            {
                "insertInlineImage": {
                    "location": {"index": index},
                    "uri": image_uri,
                    "objectSize": {
                        "width": {"magnitude": width_pt, "unit": "PT"},
                        "height": {"magnitude": height_pt, "unit": "PT"},
                    },
                }
            },
        ]
        call = self._documents.batchUpdate(documentId=doc_id, body={"requests": requests})
        await asyncio.to_thread(call.execute)

    async def grant_public_read(self, file_id: str) -> None:
        request = self._permissions.create(fileId=file_id, body={"role": "reader", "type": "anyone"})
        await asyncio.to_thread(request.execute)

    async def export_pdf(self, doc_id: str) -> bytes:
        request = self._files.export(fileId=doc_id, mimeType="application/pdf")
        return await asyncio.to_thread(request.execute)
