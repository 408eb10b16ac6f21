"""
HTTP client for the lost & found API, including ingestion status polling.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Union

import requests

logger = logging.getLogger(__name__)

TERMINAL_STATES = ("indexed", "failed")


class ApiError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class PollTimeout(Exception):
    """Polling gave up before the item reached a terminal state."""


class LostFoundClient:
    def __init__(self, base_url: str = "http://localhost:8000", token: Optional[str] = None,
                 timeout: float = 30.0, session: Optional[requests.Session] = None, sleep=time.sleep):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"
        self._sleep = sleep

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code >= 400:
            raise ApiError(response.status_code, payload.get("error") or payload.get("message") or response.text)
        return payload

    def upload(self, title: str, location: str, image: bytes, filename: str = "item.jpg",
               description: str = "", content_type: str = "image/jpeg", wait: bool = True) -> Dict[str, Any]:
        return self._request(
            "POST", "/upload",
            params={"wait": str(wait).lower()},
            data={"title": title, "description": description, "location": location},
            files={"image": (filename, image, content_type)},
        )

    def search_text(self, query: str, min_similarity: Optional[float] = None,
                    top_k: Union[int, str, None] = None) -> List[Dict[str, Any]]:
        body = {"query": query, "minSimilarity": min_similarity, "topK": top_k}
        return self._request("POST", "/search/text", json=body)["items"]

    def search_image(self, image: bytes, filename: str = "query.jpg", content_type: str = "image/jpeg",
                     min_similarity: Optional[float] = None,
                     top_k: Union[int, str, None] = None) -> List[Dict[str, Any]]:
        data = {}
        if min_similarity is not None:
            data["minSimilarity"] = str(min_similarity)
        if top_k is not None:
            data["topK"] = str(top_k)
        return self._request("POST", "/search/image", data=data,
                             files={"image": (filename, image, content_type)})["items"]

    def status(self, item_id: str) -> Dict[str, Any]:
        response = self.session.get(f"{self.base_url}/status", params={"imageId": item_id}, timeout=self.timeout)
        if response.status_code == 404:
            return response.json()
        response.raise_for_status()
        return response.json()

    def delete(self, item_id: str, file_name: Optional[str] = None) -> bool:
        return self._request("POST", "/delete", json={"itemId": item_id, "fileName": file_name})["success"]

    def wait_until_indexed(self, item_id: str, initial_delay: float = 2.0, max_delay: float = 30.0,
                           backoff: float = 1.5, max_attempts: int = 20) -> Dict[str, Any]:
        """
        Poll ``/status`` until the item is indexed or failed.

        The delay grows by ``backoff`` each round up to ``max_delay``.
        Transport errors are logged and retried on the next round; they
        count against ``max_attempts`` like any other poll.

        Raises:
            PollTimeout: no terminal state within max_attempts polls
        """
        delay = initial_delay
        for attempt in range(1, max_attempts + 1):
            try:
                status = self.status(item_id)
                # not_found: unknown id, or the entry was pruned server-side
                if status.get("status") in TERMINAL_STATES + ("not_found",):
                    return status
            except requests.RequestException as e:
                logger.warning(f"Status check {attempt} for {item_id} failed: {e}")
            if attempt < max_attempts:
                self._sleep(delay)
                delay = min(delay * backoff, max_delay)
        raise PollTimeout(f"Item {item_id} not indexed after {max_attempts} status checks")
