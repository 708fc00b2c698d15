"""
Publisher backends.  A publisher stores named files and records each change
with a message:

    read_file(path)                            -> (content, version)
    write_file(path, content, message, *, version=None)
    delete_file(path, message)

*version* is whatever token the backend hands out on read (a blob sha for
GitHub); passing it back on write makes the write conditional.
"""

import base64
import hashlib
import logging
import os
import tempfile
from pathlib import Path
from urllib.parse import quote

import requests

from mf2press.errors import NotFoundError, PublishError

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
GITHUB_TIMEOUT = 10


################################################################################
# GitHub
################################################################################
class GitHubPublisher:
    """Commit posts to a repository through the GitHub contents API."""

    def __init__(self, *, token: str, user: str, repo: str, branch: str = "main"):
        self.user = user
        self.repo = repo
        self.branch = branch
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": "mf2press",
            }
        )

    def __repr__(self) -> str:
        return f"<GitHubPublisher {self.user}/{self.repo}@{self.branch}>"

    def _url(self, path: str) -> str:
        path = quote(path.strip("/"))
        return f"{GITHUB_API}/repos/{self.user}/{self.repo}/contents/{path}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            resp = self.session.request(
                method, self._url(path), timeout=GITHUB_TIMEOUT, **kwargs
            )
        except requests.RequestException as exc:
            logger.exception("GitHub %s %s failed", method, path)
            raise PublishError(str(exc)) from exc
        return resp

    @staticmethod
    def _fail(resp: requests.Response, path: str) -> PublishError:
        try:
            detail = resp.json().get("message", "")
        except ValueError:
            detail = resp.text
        return PublishError(f"GitHub returned {resp.status_code} for {path}: {detail}")

    def read_file(self, path: str) -> tuple[bytes, str]:
        resp = self._request("GET", path, params={"ref": self.branch})
        if resp.status_code == 404:
            raise NotFoundError(f"{path} not found")
        if not resp.ok:
            raise self._fail(resp, path)

        data = resp.json()
        # the contents API leaves files over 1 MB unencoded and empty
        if data.get("encoding") != "base64":
            raise PublishError(
                f"{path} is too large for the contents API ({data.get('size')} bytes)"
            )
        content = base64.b64decode(data.get("content") or "")
        return content, data.get("sha")

    def write_file(
        self, path: str, content: bytes, message: str, *, version: str | None = None
    ) -> None:
        payload = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.branch,
        }
        if version:
            payload["sha"] = version
        resp = self._request("PUT", path, json=payload)
        if not resp.ok:
            raise self._fail(resp, path)
        logger.info("Committed %s to %s: %s", path, self.repo, message)

    def delete_file(self, path: str, message: str) -> None:
        _content, sha = self.read_file(path)
        resp = self._request(
            "DELETE", path, json={"message": message, "sha": sha, "branch": self.branch}
        )
        if resp.status_code == 404:
            raise NotFoundError(f"{path} not found")
        if not resp.ok:
            raise self._fail(resp, path)
        logger.info("Deleted %s from %s: %s", path, self.repo, message)


################################################################################
# Local directory
################################################################################
class FilePublisher:
    """
    Write posts below a local directory.  Handy for development and for
    sites that are built from a checkout; the commit message is only logged.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def __repr__(self) -> str:
        return f"<FilePublisher {self.root}>"

    def _path(self, path: str) -> Path:
        target = (self.root / path.strip("/")).resolve()
        if target != self.root and self.root not in target.parents:
            raise PublishError(f"{path} is outside the publication directory")
        return target

    @staticmethod
    def _version(content: bytes) -> str:
        return hashlib.sha1(content).hexdigest()

    def read_file(self, path: str) -> tuple[bytes, str]:
        target = self._path(path)
        if not target.is_file():
            raise NotFoundError(f"{path} not found")
        content = target.read_bytes()
        return content, self._version(content)

    def write_file(
        self, path: str, content: bytes, message: str, *, version: str | None = None
    ) -> None:
        target = self._path(path)
        if version and target.is_file():
            if self._version(target.read_bytes()) != version:
                raise PublishError(f"{path} has changed since it was read")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".mf2press-")
        except OSError as exc:
            logger.exception("Writing %s failed", target)
            raise PublishError(str(exc)) from exc

        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
            os.replace(tmp, target)
        except OSError as exc:
            logger.exception("Writing %s failed", target)
            Path(tmp).unlink(missing_ok=True)
            raise PublishError(str(exc)) from exc
        logger.info("Wrote %s: %s", path, message)

    def delete_file(self, path: str, message: str) -> None:
        target = self._path(path)
        if not target.is_file():
            raise NotFoundError(f"{path} not found")
        try:
            target.unlink()
        except OSError as exc:
            raise PublishError(str(exc)) from exc
        logger.info("Deleted %s: %s", path, message)
