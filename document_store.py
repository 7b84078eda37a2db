"""Document storage on top of an Azure Blob Storage container.

Each document is two blobs:

* ``<prefix>docs/<key>`` holds the uploaded bytes, the content type and a
  small metadata envelope (``original_name``, ``created_at``,
  ``extracted_chars``);
* ``<prefix>text/<key>.txt`` holds the extracted text, which is far too
  large for blob metadata.

Keys look like ``<13-digit epoch millis>-<percent-encoded file name>``. The
timestamp is fixed width, so the name always starts at the same offset no
matter how many ``-`` it contains.
"""

import re
import time
import logging
import pathlib
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple
from urllib.parse import quote, unquote

from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobServiceClient, ContainerClient, ContentSettings
from pydantic import BaseModel, ConfigDict, Field

from errors import NotFound, StorageReadFailure, StorageWriteFailure

logger = logging.getLogger("docchat.store")

KEY_TIMESTAMP_WIDTH = 13
KEY_PATTERN = re.compile(r"^(\d{%d})-(.+)$" % KEY_TIMESTAMP_WIDTH, re.DOTALL)
DOCS_DIR = "docs/"
TEXT_DIR = "text/"
PUT_ATTEMPTS = 3


class DocumentRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    type: str
    url: str
    upload_date: datetime = Field(alias="uploadDate")
    has_text: bool = Field(alias="hasText")
    # None means "not loaded" (listings) or "sidecar missing"; "" means no text.
    extracted_text: Optional[str] = Field(default=None, exclude=True)

    def to_json(self):
        return self.model_dump(by_alias=True, mode="json")


def make_key(original_name: str, created_ms: int) -> str:
    # Browsers sometimes send "C:\fakepath\report.pdf"
    name = pathlib.PurePosixPath(original_name.replace("\\", "/")).name or "document"
    return f"{created_ms:0{KEY_TIMESTAMP_WIDTH}d}-{quote(name, safe='')}"


def parse_key(key: str) -> Tuple[int, str]:
    """Split a key into (epoch millis, display name). Raises ValueError."""
    m = KEY_PATTERN.match(key or "")
    if not m:
        raise ValueError(f"Malformed document key: {key!r}")
    return int(m.group(1)), unquote(m.group(2))


def _ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _now_ms() -> int:
    return int(time.time() * 1000)


def container_client_from_settings(
    container: str,
    connection_string: Optional[str] = None,
    account: Optional[str] = None,
) -> ContainerClient:
    if connection_string:
        bsc = BlobServiceClient.from_connection_string(connection_string)
    else:
        if not account:
            raise RuntimeError("Missing AZURE_STORAGE_ACCOUNT (or AZURE_STORAGE_CONNECTION_STRING).")
        account_url = f"https://{account}.blob.core.windows.net"
        bsc = BlobServiceClient(account_url=account_url, credential=DefaultAzureCredential())
    return bsc.get_container_client(container)


class DocumentStore:
    """put / list / get_metadata / delete over a single container.

    Nothing is cached; every call reflects the backend's current state.
    """

    def __init__(self, container: ContainerClient, prefix: str = "", clock: Callable[[], int] = _now_ms):
        self.container = container
        self.prefix = prefix
        self.clock = clock

    def _doc_blob(self, key: str) -> str:
        return f"{self.prefix}{DOCS_DIR}{key}"

    def _text_blob(self, key: str) -> str:
        return f"{self.prefix}{TEXT_DIR}{key}.txt"

    def _url(self, key: str) -> str:
        return self.container.get_blob_client(self._doc_blob(key)).url

    def _record(self, key: str, props, extracted_text: Optional[str] = None) -> DocumentRecord:
        created_ms, name = parse_key(key)
        metadata = getattr(props, "metadata", None) or {}
        content_settings = getattr(props, "content_settings", None)
        content_type = getattr(content_settings, "content_type", None) or "application/octet-stream"

        upload_date = _ms_to_datetime(created_ms)
        created_at = metadata.get("created_at")
        if created_at:
            try:
                upload_date = datetime.fromisoformat(created_at)
            except ValueError:
                logger.warning("Ignoring unparseable created_at %r on %s", created_at, key)

        if extracted_text is not None:
            has_text = extracted_text != ""
        else:
            try:
                has_text = int(metadata.get("extracted_chars", "0")) > 0
            except ValueError:
                has_text = False

        return DocumentRecord(
            id=key,
            name=name,
            type=content_type,
            url=self._url(key),
            upload_date=upload_date,
            has_text=has_text,
            extracted_text=extracted_text,
        )

    def put(self, data: bytes, content_type: str, original_name: str, extracted_text: str) -> DocumentRecord:
        created_ms = self.clock()
        key = None
        for _ in range(PUT_ATTEMPTS):
            key = make_key(original_name, created_ms)
            metadata = {
                "original_name": quote(parse_key(key)[1], safe=""),
                "created_at": _ms_to_datetime(created_ms).isoformat(),
                "extracted_chars": str(len(extracted_text)),
            }
            try:
                self.container.upload_blob(
                    self._doc_blob(key),
                    data,
                    overwrite=False,
                    content_settings=ContentSettings(content_type=content_type),
                    metadata=metadata,
                )
                break
            except ResourceExistsError:
                # Same millisecond, same name: move to the next millisecond.
                created_ms += 1
            except AzureError as exc:
                logger.error("Failed to write document blob for %s: %s", key, exc)
                raise StorageWriteFailure("The document could not be saved.", details=str(exc)) from exc
        else:
            raise StorageWriteFailure("The document could not be saved: the storage key is already taken.")

        try:
            self.container.upload_blob(
                self._text_blob(key),
                extracted_text.encode("utf-8"),
                overwrite=True,
                content_settings=ContentSettings(content_type="text/plain; charset=utf-8"),
            )
        except AzureError as exc:
            logger.error("Failed to write extracted text for %s: %s", key, exc)
            self._discard(self._doc_blob(key))
            raise StorageWriteFailure("The document text could not be saved.", details=str(exc)) from exc

        logger.info("Stored document %s (%s, %d chars of text)", key, content_type, len(extracted_text))
        return DocumentRecord(
            id=key,
            name=parse_key(key)[1],
            type=content_type,
            url=self._url(key),
            upload_date=_ms_to_datetime(created_ms),
            has_text=extracted_text != "",
            extracted_text=extracted_text,
        )

    def _discard(self, blob_name: str) -> None:
        try:
            self.container.delete_blob(blob_name)
        except ResourceNotFoundError:
            pass
        except AzureError as exc:
            logger.error("Could not roll back blob %s: %s", blob_name, exc)

    def list(self) -> List[DocumentRecord]:
        docs_prefix = f"{self.prefix}{DOCS_DIR}"
        records: List[DocumentRecord] = []
        try:
            for props in self.container.list_blobs(name_starts_with=docs_prefix, include=["metadata"]):
                key = props.name[len(docs_prefix):]
                try:
                    records.append(self._record(key, props))
                except ValueError:
                    logger.warning("Skipping blob with malformed key: %s", props.name)
        except AzureError as exc:
            logger.error("Listing documents failed: %s", exc)
            raise StorageReadFailure("The document list could not be loaded.") from exc
        return records

    def get_metadata(self, key: str) -> DocumentRecord:
        try:
            parse_key(key)
        except ValueError as exc:
            raise NotFound(f"Document not found: {key}") from exc

        try:
            props = self.container.get_blob_client(self._doc_blob(key)).get_blob_properties()
        except ResourceNotFoundError as exc:
            raise NotFound(f"Document not found: {key}") from exc
        except AzureError as exc:
            logger.error("Reading metadata for %s failed: %s", key, exc)
            raise StorageReadFailure(f"Document {key} could not be read.") from exc

        try:
            raw = self.container.get_blob_client(self._text_blob(key)).download_blob().readall()
            extracted_text = raw.decode("utf-8")
        except ResourceNotFoundError:
            logger.warning("Extracted text missing for %s", key)
            extracted_text = None
        except AzureError as exc:
            logger.error("Reading extracted text for %s failed: %s", key, exc)
            raise StorageReadFailure(f"Document {key} could not be read.") from exc
        except UnicodeDecodeError as exc:
            logger.error("Extracted text for %s is not valid UTF-8: %s", key, exc)
            raise StorageReadFailure(f"Document {key} could not be read.", details=str(exc)) from exc

        record = self._record(key, props, extracted_text)
        if extracted_text is None:
            record.has_text = False
        return record

    def delete(self, key: str) -> None:
        try:
            parse_key(key)
        except ValueError as exc:
            raise NotFound(f"Document not found: {key}") from exc

        try:
            self.container.delete_blob(self._doc_blob(key))
        except ResourceNotFoundError as exc:
            raise NotFound(f"Document not found: {key}") from exc
        except AzureError as exc:
            logger.error("Deleting %s failed: %s", key, exc)
            raise StorageWriteFailure("The document could not be deleted.", details=str(exc)) from exc

        self._discard(self._text_blob(key))
        logger.info("Deleted document %s", key)
