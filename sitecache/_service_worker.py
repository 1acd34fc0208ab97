"""Service Worker JavaScript for the deployed site.

Renders the browser-side counterpart of OfflineCacheManager from the same
cache configuration, so the deployed sw.js and the Python cache agree on the
generation name and the precache manifest:
- install: precache the manifest (all-or-nothing)
- fetch: cache-first with network fallback, no write-back
- activate: delete every cache whose name is not the current generation
"""

import json

from .config import CacheConfig

# Cache-first lookup, scoped to the current generation.
_MATCH_CURRENT = "caches.open(CACHE_NAME).then(cache => cache.match(event.request))"

# Cache-first lookup across every cache.
_MATCH_ALL = "caches.match(event.request)"

_TEMPLATE = """// Service Worker for {cache_name}
// Generated by sitecache - edit config.yaml, not this file.

const CACHE_NAME = {cache_name_js};
const urlsToCache = {manifest_js};

self.addEventListener('install', (event) => {{
    event.waitUntil(
        caches.open(CACHE_NAME)
            .then(cache => {{
                console.log('[SW] Opened cache', CACHE_NAME);
                return cache.addAll(urlsToCache);
            }})
    );
}});

self.addEventListener('fetch', (event) => {{
    event.respondWith(
        {match_expr}
            .then(response => {{
                // Cache hit - return response
                if (response) {{
                    return response;
                }}
                return fetch(event.request);
            }})
    );
}});

self.addEventListener('activate', (event) => {{
    const cacheWhitelist = [CACHE_NAME];

    event.waitUntil(
        caches.keys().then(cacheNames => {{
            return Promise.all(
                cacheNames
                    .filter(cacheName => cacheWhitelist.indexOf(cacheName) === -1)
                    .map(cacheName => {{
                        console.log('[SW] Deleting old cache:', cacheName);
                        return caches.delete(cacheName).catch(error => {{
                            console.warn('[SW] Failed to delete cache', cacheName, error);
                        }});
                    }})
            );
        }})
    );
}});
"""


def render_service_worker(cache: CacheConfig) -> str:
    """Render sw.js for the given cache generation and manifest."""
    manifest_js = json.dumps(list(cache.precache), indent=4)
    return _TEMPLATE.format(
        cache_name=cache.name,
        cache_name_js=json.dumps(cache.name),
        manifest_js=manifest_js,
        match_expr=_MATCH_ALL if cache.match_scope == "all" else _MATCH_CURRENT,
    )
