from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Sequence

import requests

LOGGER = logging.getLogger(__name__)

Animator = Callable[[str, Sequence[float], Sequence[float], int], None]
Downloader = Callable[[str], bytes]
LinkCreator = Callable[[str, str], str]
LinkResolver = Callable[[str], bytes]


def default_download(url: str, timeout: int = 60) -> bytes:
    """Plain HTTP GET; failures surface as RuntimeError, no retries."""
    LOGGER.info("Downloading %s", url)
    try:
        r = requests.get(url, timeout=timeout)
        r.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeError(f"Failed to download {url}: {e}") from e
    return r.content


def _no_animation(kind, x, y, iteration) -> None:
    return None


def _no_link_creator(fmt: str, file: str) -> str:
    raise RuntimeError("no link creator has been registered; use set_create_link()")


def _no_link_resolver(link_id: str) -> bytes:
    raise RuntimeError("no link resolver has been registered; use set_resolve_link()")


@dataclass
class EngineContext:
    """
    Bundle of the externally supplied callbacks an analysis needs.

    Steps read the bundle they were created with; the module-level default is
    only changed through the ``set_*`` functions below, between full runs.
    """

    animate: Animator = _no_animation
    download: Downloader = default_download
    create_link: LinkCreator = _no_link_creator
    resolve_link: LinkResolver = _no_link_resolver
    # Number of iterations between two animation frames.
    animation_interval: int = field(default=100)

    def copy(self) -> "EngineContext":
        return replace(self)


_DEFAULT = EngineContext()


def default_context() -> EngineContext:
    return _DEFAULT


def _swap(attr: str, fun: Optional[Callable]):
    previous = getattr(_DEFAULT, attr)
    setattr(_DEFAULT, attr, fun)
    return previous


def set_visualization_animate(fun: Optional[Animator]) -> Animator:
    """Register the animation callback; returns the previous one."""
    return _swap("animate", fun if fun is not None else _no_animation)


def set_download(fun: Optional[Downloader]) -> Downloader:
    """Register the downloader used for reference lists; returns the previous one."""
    return _swap("download", fun if fun is not None else default_download)


def set_create_link(fun: Optional[LinkCreator]) -> LinkCreator:
    return _swap("create_link", fun if fun is not None else _no_link_creator)


def set_resolve_link(fun: Optional[LinkResolver]) -> LinkResolver:
    return _swap("resolve_link", fun if fun is not None else _no_link_resolver)
