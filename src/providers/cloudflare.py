"""Cloudflare API client: zones, tunnels, DNS records and workers.

Tunnels follow the find_/create_/delete_ convention so the Reconciler can
drive them. DNS records are upserted with ensure_dns_record().
"""

import base64
import json
import logging
import secrets
from typing import Optional

import naming
from providers.base import ApiError, HttpClient, ProviderError
from providers.types import Tunnel

logger = logging.getLogger(__name__)

AUTH_COOKIE = 'stackrun_access'

WORKER_SCRIPT = """\
function parseCookies(header) {
  const cookies = {};
  if (!header) return cookies;
  header.split(';').forEach(cookie => {
    const [name, ...rest] = cookie.trim().split('=');
    if (name) cookies[name] = rest.join('=');
  });
  return cookies;
}

export default {
  async fetch(request, env) {
    const url = new URL(request.url);
    const tokenParam = url.searchParams.get('token');
    const cookieToken = parseCookies(request.headers.get('Cookie') || '')['%(cookie)s'];
    const token = tokenParam || cookieToken;
    if (!token || token !== env.ACCESS_TOKEN) {
      return new Response('Not Found', { status: 404 });
    }
    if (tokenParam && !cookieToken) {
      url.searchParams.delete('token');
      return new Response(null, {
        status: 302,
        headers: {
          'Location': url.toString(),
          'Set-Cookie': `%(cookie)s=${token}; HttpOnly; Secure; SameSite=Strict; Path=/; Max-Age=86400`
        }
      });
    }
    return fetch(request);
  }
};
""" % {'cookie': AUTH_COOKIE}


class CloudflareClient(HttpClient):
    """Client for api.cloudflare.com/client/v4."""

    BASE_URL = 'https://api.cloudflare.com/client/v4'

    def __init__(self, api_token: str, account_id: str, timeout: int = 60, session=None):
        if not api_token:
            raise ProviderError("Cloudflare API token not configured")
        if not account_id:
            raise ProviderError("Cloudflare account ID not configured")
        self.api_token = api_token
        self.account_id = account_id
        super().__init__(timeout=timeout, session=session)

    def auth_headers(self) -> dict:
        return {'Authorization': f'Bearer {self.api_token}'}

    # ─── Zones ───────────────────────────────────────────────────

    def find_zone(self, domain: str) -> Optional[dict]:
        results = self.get('/zones', {'name': domain}).get('result') or []
        return results[0] if results else None

    def get_zone_id(self, domain: str) -> str:
        zone = self.find_zone(domain)
        if not zone:
            raise ProviderError(f"Zone not found for domain: {domain}")
        return zone['id']

    # ─── Tunnels ─────────────────────────────────────────────────

    def _tunnels_path(self) -> str:
        return f'/accounts/{self.account_id}/cfd_tunnel'

    def find_tunnel(self, name: str) -> Optional[Tunnel]:
        results = self.get(self._tunnels_path(), {'name': name, 'is_deleted': 'false'}).get('result') or []
        return _to_tunnel(results[0]) if results else None

    def create_tunnel(self, name: str) -> Tunnel:
        response = self.post(self._tunnels_path(), {
            'name': name,
            'tunnel_secret': base64.b64encode(secrets.token_bytes(32)).decode(),
            'config_src': 'cloudflare',
        })
        return _to_tunnel(response['result'])

    def get_tunnel(self, tunnel_id: str) -> Optional[Tunnel]:
        try:
            result = self.get(f'{self._tunnels_path()}/{tunnel_id}').get('result')
        except ApiError as e:
            if e.not_found:
                return None
            raise
        return _to_tunnel(result) if result else None

    def get_tunnel_token(self, tunnel_id: str) -> str:
        return self.get(f'{self._tunnels_path()}/{tunnel_id}/token')['result']

    def configure_tunnel_ingress(self, tunnel_id: str, rules: list[dict]):
        return self.put(f'{self._tunnels_path()}/{tunnel_id}/configurations',
                        {'config': {'ingress': rules}})

    def delete_tunnel(self, tunnel_id: str):
        """Delete a tunnel after dropping its active connections."""
        try:
            self.delete(f'{self._tunnels_path()}/{tunnel_id}/connections')
        except ApiError as e:
            logger.debug(f"Could not clean connections for tunnel {tunnel_id}: {e}")
        return self.delete(f'{self._tunnels_path()}/{tunnel_id}')

    # ─── DNS ─────────────────────────────────────────────────────

    def find_dns_record(self, zone_id: str, hostname: str, record_type: str = 'CNAME') -> Optional[dict]:
        results = self.get(f'/zones/{zone_id}/dns_records',
                           {'name': hostname, 'type': record_type}).get('result') or []
        return results[0] if results else None

    def ensure_dns_record(self, zone_id: str, hostname: str, tunnel_id: str) -> dict:
        """Point hostname at the tunnel with a proxied CNAME, updating it if it drifted."""
        content = f'{tunnel_id}.cfargotunnel.com'
        record = {'type': 'CNAME', 'name': hostname, 'content': content, 'proxied': True, 'ttl': 1}
        existing = self.find_dns_record(zone_id, hostname)
        if existing:
            if existing.get('content') == content:
                return existing
            return self.put(f"/zones/{zone_id}/dns_records/{existing['id']}", record)['result']
        return self.post(f'/zones/{zone_id}/dns_records', record)['result']

    def delete_dns_record(self, zone_id: str, record_id: str):
        return self.delete(f'/zones/{zone_id}/dns_records/{record_id}')

    # ─── Workers ─────────────────────────────────────────────────

    def deploy_worker(self, slug: str, access_token: str):
        """Upload the access-gate worker for a sandbox preview."""
        metadata = {
            'main_module': 'worker.js',
            'compatibility_date': '2024-01-01',
            'bindings': [
                {'type': 'plain_text', 'name': 'SANDBOX_SLUG', 'text': slug},
                {'type': 'secret_text', 'name': 'ACCESS_TOKEN', 'text': access_token},
            ],
        }
        files = {
            'metadata': (None, json.dumps(metadata), 'application/json'),
            'worker.js': ('worker.js', WORKER_SCRIPT, 'application/javascript+module'),
        }
        result = self.put(f'/accounts/{self.account_id}/workers/scripts/{naming.worker(slug)}', files=files)
        if isinstance(result, dict) and result.get('success') is False:
            errors = ', '.join(e.get('message', '') for e in result.get('errors') or []) or 'unknown error'
            raise ProviderError(f"Worker deploy failed: {errors}")
        return result

    def find_worker_route(self, zone_id: str, pattern: str) -> Optional[dict]:
        routes = self.get(f'/zones/{zone_id}/workers/routes').get('result') or []
        for route in routes:
            if route.get('pattern') == pattern:
                return route
        return None

    def create_worker_route(self, zone_id: str, slug: str, domain: str) -> dict:
        pattern = naming.worker_route(slug, domain)
        existing = self.find_worker_route(zone_id, pattern)
        if existing:
            return existing
        return self.post(f'/zones/{zone_id}/workers/routes',
                         {'pattern': pattern, 'script': naming.worker(slug)})['result']

    def delete_worker_route(self, zone_id: str, slug: str, domain: str):
        """Delete the preview route for slug; no-op when it does not exist."""
        existing = self.find_worker_route(zone_id, naming.worker_route(slug, domain))
        if not existing:
            return None
        return self.delete(f"/zones/{zone_id}/workers/routes/{existing['id']}")

    def delete_worker(self, slug: str):
        return self.delete(f'/accounts/{self.account_id}/workers/scripts/{naming.worker(slug)}')

    def validate_credentials(self) -> bool:
        try:
            self.get('/user/tokens/verify')
        except ApiError as e:
            if e.unauthorized:
                raise ProviderError(f"Cloudflare credentials invalid: {e}") from e
            raise
        return True


def _to_tunnel(data: dict) -> Tunnel:
    return Tunnel(
        id=data['id'],
        name=data.get('name', ''),
        status=data.get('status'),
        token=data.get('token'),
    )
