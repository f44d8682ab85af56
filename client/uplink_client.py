from __future__ import annotations

from typing import Any, Callable, Dict, Iterator, Optional

import httpx

ProgressCallback = Callable[[int, int], None]

_CHUNK_SIZE = 64 * 1024


class UplinkClientError(Exception):
    """A non-2xx answer from the uplink service or the object store."""

    def __init__(self, status: int, code: str, message: str):
        super().__init__(f"{status} {code}: {message}")
        self.status = status
        self.code = code
        self.message = message

    @classmethod
    def from_response(cls, resp: httpx.Response) -> "UplinkClientError":
        code, message = "HTTPError", resp.text or resp.reason_phrase
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = str(body.get("error") or code)
            message = str(body.get("message") or body.get("detail") or message)
        return cls(resp.status_code, code, message)


class UplinkClient:
    """
    Thin client for the /s3/{instance} RPC surface.

    Bytes never pass through the service: upload_file asks for a presigned
    PUT URL and sends the data straight to the store; download_file does the
    same with a presigned GET URL.
    """

    def __init__(
        self,
        base_url: str,
        instance: str,
        token: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.instance = instance
        self._api = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/s3/{instance}",
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        # presigned URLs carry their own auth; never forward the bearer token
        self._store = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._api.close()
        self._store.close()

    def __enter__(self) -> "UplinkClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _call(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        resp = self._api.request(method, path, json=json)
        if resp.is_error:
            raise UplinkClientError.from_response(resp)
        return resp.json()

    def request_upload(
        self,
        name: str,
        size: int,
        mime_type: str,
        meta: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self._call(
            "POST",
            "/upload-url",
            json={
                "filename": name,
                "size": size,
                "mime_type": mime_type,
                "meta": meta or {},
                "context": context or {},
            },
        )

    def upload_file(
        self,
        name: str,
        data: bytes,
        mime_type: str = "application/octet-stream",
        meta: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Request a URL, PUT the bytes, return the file id."""
        intent = self.request_upload(name, len(data), mime_type, meta=meta, context=context)
        total = len(data)

        def _chunks() -> Iterator[bytes]:
            sent = 0
            for start in range(0, total, _CHUNK_SIZE):
                chunk = data[start:start + _CHUNK_SIZE]
                sent += len(chunk)
                yield chunk
                if on_progress:
                    on_progress(sent, total)

        # presigned PUTs reject chunked transfer encoding; length is explicit
        resp = self._store.put(
            intent["url"],
            content=_chunks() if on_progress and total else data,
            headers={"Content-Type": mime_type, "Content-Length": str(total)},
        )
        if resp.is_error:
            raise UplinkClientError.from_response(resp)
        if on_progress and not total:
            on_progress(0, 0)
        return intent["file_id"]

    def head(self, file_id: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if context:
            return self._call("POST", f"/files/{file_id}/head", json={"context": context})
        return self._call("GET", f"/files/{file_id}")

    def get_download_url(self, file_id: str, context: Optional[Dict[str, Any]] = None) -> str:
        return self._call("POST", f"/files/{file_id}/download-url", json={"context": context or {}})["url"]

    def download_file(self, file_id: str, context: Optional[Dict[str, Any]] = None) -> bytes:
        url = self.get_download_url(file_id, context=context)
        resp = self._store.get(url)
        if resp.is_error:
            raise UplinkClientError.from_response(resp)
        return resp.content

    def confirm(self, file_id: str) -> Dict[str, Any]:
        return self._call("POST", f"/files/{file_id}/confirm")

    def remove_file(self, file_id: str, context: Optional[Dict[str, Any]] = None) -> None:
        self._call("DELETE", f"/files/{file_id}", json={"context": context or {}})
