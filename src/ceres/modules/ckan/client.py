"""CKAN Action API client used as the portal fetch collaborator."""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Any, Callable, Iterator, Mapping

import httpx

from ceres.core.config import HttpSettings
from ceres.core.logging import Logger, get_logger
from ceres.sync.models import FetchedDataset, FetchFailure, PortalDescriptor

__all__ = [
    "CkanClient",
    "CkanClientError",
    "CkanFetcher",
    "to_fetched_dataset",
]

_PACKAGE_LIST = "api/3/action/package_list"
_PACKAGE_SHOW = "api/3/action/package_show"
# Fields lifted into the dataset itself; everything else is raw metadata.
_PROMOTED_FIELDS = frozenset({"id", "name", "title", "notes"})


@dataclass(slots=True)
class CkanClientError(RuntimeError):
    """Raised when a portal request fails after transport retries."""

    message: str
    url: str
    status_code: int | None = None

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


def _normalize_base_url(value: str) -> str:
    url = httpx.URL(value.strip())
    if url.scheme not in ("http", "https") or not url.host:
        raise ValueError(f"Invalid CKAN URL: {value!r}")
    return str(url).rstrip("/") + "/"


def to_fetched_dataset(
    package: Mapping[str, Any],
    portal_url: str,
) -> FetchedDataset:
    """Convert a ``package_show`` result into a :class:`FetchedDataset`.

    Example:
        >>> dataset = to_fetched_dataset(
        ...     {"id": "42", "name": "air", "title": "Air", "notes": "PM10"},
        ...     "https://dati.example.org/",
        ... )
        >>> dataset.url
        'https://dati.example.org/dataset/air'
    """

    try:
        original_id = str(package["id"])
        name = str(package["name"])
        title = str(package["title"])
    except KeyError as exc:
        raise ValueError(f"CKAN package is missing field {exc.args[0]!r}") from exc

    notes = package.get("notes")
    extras = {
        key: value for key, value in package.items() if key not in _PROMOTED_FIELDS
    }
    return FetchedDataset(
        source_portal=portal_url,
        original_id=original_id,
        url=f"{portal_url.rstrip('/')}/dataset/{name}",
        title=title,
        description=notes if isinstance(notes, str) and notes else None,
        raw_metadata=extras,
    )


class CkanClient:
    """Minimal synchronous client for one CKAN portal.

    Requests are retried on HTTP 429, 5xx responses and transport errors,
    up to ``settings.max_retries`` attempts in total.
    """

    def __init__(
        self,
        base_url: str,
        *,
        settings: HttpSettings | None = None,
        client: httpx.Client | None = None,
        logger: Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or HttpSettings()
        self._base_url = _normalize_base_url(base_url)
        self._client = client or httpx.Client(
            timeout=self._settings.timeout,
            headers={"User-Agent": self._settings.user_agent},
            follow_redirects=True,
        )
        self._logger = logger or get_logger(__name__, component="ckan")
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "CkanClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def list_package_ids(self) -> list[str]:
        result = self._action(_PACKAGE_LIST)
        if not isinstance(result, list):
            raise CkanClientError(
                "CKAN package_list returned an unexpected payload",
                url=self._base_url + _PACKAGE_LIST,
            )
        return [str(item) for item in result]

    def show_package(self, package_id: str) -> Mapping[str, Any]:
        result = self._action(_PACKAGE_SHOW, params={"id": package_id})
        if not isinstance(result, Mapping):
            raise CkanClientError(
                f"CKAN package_show returned an unexpected payload for {package_id}",
                url=self._base_url + _PACKAGE_SHOW,
            )
        return result

    def _action(
        self,
        action: str,
        *,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        url = self._base_url + action
        response = self._get_with_retry(url, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise CkanClientError(
                f"Invalid JSON from {url}",
                url=url,
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, Mapping) or not payload.get("success"):
            raise CkanClientError(
                f"CKAN API returned success: false for {action}",
                url=url,
                status_code=response.status_code,
            )
        return payload.get("result")

    def _get_with_retry(
        self,
        url: str,
        *,
        params: Mapping[str, str] | None,
    ) -> httpx.Response:
        attempts = self._settings.max_retries
        base = self._settings.retry_base_delay
        last_error = CkanClientError("No attempts made", url=url)

        for attempt in range(1, attempts + 1):
            try:
                response = self._client.get(url, params=params)
            except httpx.TransportError as exc:
                last_error = CkanClientError(
                    f"Request to {url} failed: {exc.__class__.__name__}",
                    url=url,
                )
                delay = base * attempt
            else:
                status = response.status_code
                if response.is_success:
                    return response
                last_error = CkanClientError(
                    f"HTTP {status} from {url}",
                    url=url,
                    status_code=status,
                )
                if status == httpx.codes.TOO_MANY_REQUESTS:
                    delay = base * (2**attempt)
                elif response.is_server_error:
                    delay = base * attempt
                else:
                    raise last_error

            if attempt < attempts:
                self._logger.warning(
                    "ckan-request-retry",
                    url=url,
                    attempt=attempt,
                    status_code=last_error.status_code,
                    delay=delay,
                )
                self._sleep(delay)

        raise last_error


class CkanFetcher:
    """Portal fetcher yielding every package of a CKAN portal.

    The package list is requested eagerly so listing failures surface from
    :meth:`fetch`; package details are then requested lazily one at a time.
    A package whose details cannot be fetched or converted is logged and
    yielded as a :class:`FetchFailure` carrying its listed identifier.
    """

    def __init__(
        self,
        *,
        settings: HttpSettings | None = None,
        logger: Logger | None = None,
        client_factory: Callable[[str], CkanClient] | None = None,
    ) -> None:
        self._settings = settings or HttpSettings()
        self._logger = logger or get_logger(__name__, component="ckan")
        self._client_factory = client_factory or (
            lambda url: CkanClient(url, settings=self._settings, logger=self._logger)
        )

    def fetch(
        self,
        portal: PortalDescriptor,
    ) -> Iterator[FetchedDataset | FetchFailure]:
        if portal.portal_type.lower() != "ckan":
            raise ValueError(
                f"Unsupported portal type {portal.portal_type!r} for {portal.name}"
            )
        client = self._client_factory(portal.url)
        try:
            package_ids = client.list_package_ids()
        except Exception:
            client.close()
            raise
        self._logger.info(
            "ckan-package-list",
            portal=portal.name,
            packages=len(package_ids),
        )
        return self._iter_packages(client, portal, package_ids)

    def _iter_packages(
        self,
        client: CkanClient,
        portal: PortalDescriptor,
        package_ids: list[str],
    ) -> Iterator[FetchedDataset | FetchFailure]:
        with client:
            for package_id in package_ids:
                try:
                    package = client.show_package(package_id)
                    dataset = to_fetched_dataset(package, portal.identity)
                except (CkanClientError, ValueError) as exc:
                    self._logger.warning(
                        "ckan-package-failed",
                        portal=portal.name,
                        package=package_id,
                        error=str(exc),
                    )
                    yield FetchFailure(package_id, str(exc))
                    continue
                yield dataset
