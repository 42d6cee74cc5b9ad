"""Site Scaffolder - copies the tenant site template and creates a static site

Both steps are optional and best effort: provisioning a tenant never fails
because GitHub or Netlify did.
"""
import re
import secrets
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from ..config.settings import Settings
from ..domain.errors import ExternalServiceError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SiteScaffolder:
    """GitHub contents API + Netlify sites API"""

    GITHUB_API = "https://api.github.com"
    NETLIFY_API = "https://api.netlify.com/api/v1"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await client.request(method, url, **kwargs)

    # =========================================================================
    # GitHub
    # =========================================================================

    def _github_headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "queuejoy-provisioning",
            "Authorization": f"token {self.settings.github_token}",
        }

    def _contents_url(self, path: str) -> str:
        s = self.settings
        return f"{self.GITHUB_API}/repos/{s.github_owner}/{s.github_repo}/contents/{quote(path)}"

    async def _list_template(self, path: str) -> List[Dict[str, Any]]:
        """Every file below ``path`` with its base64 content"""
        files: List[Dict[str, Any]] = []
        pending = [path]
        params = {"ref": self.settings.github_branch}
        while pending:
            current = pending.pop()
            response = await self._request(
                "GET", self._contents_url(current), headers=self._github_headers(), params=params
            )
            if response.status_code != 200:
                continue
            items = response.json()
            if isinstance(items, dict):
                items = [items]
            for item in items:
                if item.get("type") == "dir":
                    pending.append(item["path"])
                elif item.get("type") == "file":
                    files.append({"path": item["path"]})

        for f in files:
            response = await self._request(
                "GET", self._contents_url(f["path"]), headers=self._github_headers(), params=params
            )
            if response.status_code == 200:
                f["content"] = (response.json().get("content") or "").replace("\n", "")
        return [f for f in files if f.get("content")]

    async def copy_template(self, slug: str) -> List[Dict[str, Any]]:
        """Copy template/<...> to <slug>/<...> in the configured repository"""
        s = self.settings
        if not (s.github_token and s.github_owner and s.github_repo):
            raise ExternalServiceError("Missing GitHub deployment settings")

        template = s.template_path_in_repo.strip("/") or "template"
        files = await self._list_template(template)
        if not files:
            raise ExternalServiceError(f'Template path "{template}" is empty or not found in repo')

        prefix = re.compile(rf"^{re.escape(template)}/?")
        created = []
        for f in files:
            target = f"{slug}/{prefix.sub('', f['path']).lstrip('/')}"
            payload: Dict[str, Any] = {
                "message": f"Create tenant {slug} - add {target}",
                "content": f["content"],
                "branch": s.github_branch,
            }
            response = await self._request("PUT", self._contents_url(target), headers=self._github_headers(), json=payload)
            if response.status_code == 422:
                # already there: update in place using its sha
                existing = await self._request(
                    "GET", self._contents_url(target), headers=self._github_headers(),
                    params={"ref": s.github_branch},
                )
                if existing.status_code == 200 and existing.json().get("sha"):
                    payload["sha"] = existing.json()["sha"]
                    response = await self._request(
                        "PUT", self._contents_url(target), headers=self._github_headers(), json=payload
                    )
            ok = response.status_code in (200, 201)
            entry: Dict[str, Any] = {"path": target, "ok": ok, "status": response.status_code}
            if ok:
                entry["url"] = ((response.json() or {}).get("content") or {}).get("html_url")
            created.append(entry)

        logger.info(f"Copied {len(created)} template files for {slug}", extra={"tenant": slug})
        return created

    # =========================================================================
    # Netlify
    # =========================================================================

    async def create_site(self, slug: str) -> Dict[str, Any]:
        s = self.settings
        if not s.netlify_auth_token:
            raise ExternalServiceError("Missing Netlify auth token")
        body = {
            "name": f"{slug}-{secrets.token_hex(3)}",
            "repo": {
                "provider": "github",
                "owner": s.github_owner,
                "repo": s.github_repo,
                "branch": s.github_branch,
            },
        }
        response = await self._request(
            "POST",
            f"{self.NETLIFY_API}/sites",
            headers={"Authorization": f"Bearer {s.netlify_auth_token}"},
            json=body,
        )
        data = response.json() if response.content else {}
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Netlify site creation failed: {response.status_code}",
                details={"status": response.status_code, "body": data},
            )
        return {"id": data.get("id"), "name": data.get("name"), "url": data.get("url")}

    # =========================================================================
    # Orchestration
    # =========================================================================

    async def scaffold(self, slug: str) -> Dict[str, Any]:
        """Run the enabled steps; failures are reported, never raised"""
        result: Dict[str, Any] = {"repo": None, "netlify": None}
        if self.settings.enable_repo_deploy:
            try:
                files = await self.copy_template(slug)
                result["repo"] = {"deployed": True, "files": files}
            except (ExternalServiceError, httpx.HTTPError) as e:
                logger.error(f"Repo deploy failed for {slug}: {e}", extra={"tenant": slug})
                result["repo"] = {"deployed": False, "error": str(e)}
        if self.settings.enable_netlify_create:
            try:
                result["netlify"] = await self.create_site(slug)
            except (ExternalServiceError, httpx.HTTPError) as e:
                logger.error(f"Netlify create failed for {slug}: {e}", extra={"tenant": slug})
                result["netlify"] = {"error": True, "message": str(e)}
        return result
