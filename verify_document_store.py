"""Round-trips a throwaway document through the configured container.

Usage: python verify_document_store.py
"""

import config
from document_store import DocumentStore, container_client_from_settings
from errors import DocChatError, NotFound


def verify():
    print(f"Checking access to {config.AZURE_STORAGE_ACCOUNT or '<connection string>'}/{config.AZURE_STORAGE_CONTAINER}...")

    container = container_client_from_settings(
        config.AZURE_STORAGE_CONTAINER,
        connection_string=config.AZURE_STORAGE_CONNECTION_STRING,
        account=config.AZURE_STORAGE_ACCOUNT,
    )
    store = DocumentStore(container, prefix=config.AZURE_STORAGE_PREFIX)

    # A dash in the name exercises the fixed-width key prefix.
    name = "verify-store 2024-01-01.txt"
    text = "Revenue grew 10%."
    record = store.put(text.encode("utf-8"), "text/plain", name, text)
    print(f"Upload successful: {record.id}")

    print("Verifying metadata...")
    fetched = store.get_metadata(record.id)
    assert fetched.name == name, fetched.name
    assert fetched.extracted_text == text
    assert any(r.id == record.id for r in store.list())

    print("Verification Passed! Metadata and text match.")

    store.delete(record.id)
    try:
        store.get_metadata(record.id)
    except NotFound:
        print("Cleanup successful.")
    else:
        raise AssertionError("document still present after delete")


if __name__ == "__main__":
    try:
        verify()
    except (DocChatError, AssertionError, RuntimeError) as e:
        print(f"Verification FAILED: {e}")
