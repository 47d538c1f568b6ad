"""
An in-memory repository served through httpx.MockTransport, for exercising ApiClient and everything built on it.
"""

import json
import re

import httpx

from export_tenant_works import ApiClient, UrlBuilder

BASE_URL: str = 'http://repo.test'
CLAUSE_RE = re.compile(r'^(?P<field>[\w:]+):"(?P<value>.*)"$')
FILE_CONTENT_RE = re.compile(r'^/api/files/(?P<file_id>[^/]+)/content/$')
OBJECT_RE = re.compile(r'^/api/(?P<kind>[^/]+)/(?P<obj_id>[^/]+)/$')


class FakeRepository:
    """
    Serves accounts, objects, a Solr-ish search endpoint, blob content, and PUT uploads.
    - `index` holds search docs; filters are `field:"value"` clauses joined by ` AND `.
    - `scripted_pages`, when set, replaces the index with fixed pages keyed by `start` (to simulate drift).
    - `failing_filters` makes searches for those filters answer 500.
    - `require_tenant` makes every non-account request without the tenant header answer 403.
    """

    def __init__(self, *, require_tenant: bool = False) -> None:
        self.accounts: list[dict[str, object]] = [{'cname': 'T', 'tenant': 'tenant-t', 'name': 'Tenant T'}]
        self.objects: dict[str, dict[str, dict[str, object]]] = {}
        self.index: list[dict[str, object]] = []
        self.blobs: dict[str, bytes] = {}
        self.scripted_pages: dict[int, list[str]] | None = None
        self.failing_filters: set[str] = set()
        self.require_tenant: bool = require_tenant
        self.search_calls: list[dict[str, str]] = []
        self.tenant_headers: list[str | None] = []
        self.puts: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []

    def add_object(self, kind: str, data: dict[str, object], **index_fields: object) -> None:
        """
        Stores an object; when index fields are given, also lists it in the search index.
        """
        self.objects.setdefault(kind, {})[str(data['id'])] = data
        if index_fields:
            self.index.append({'id': data['id'], **index_fields})

    def add_index_doc(self, obj_id: str, **index_fields: object) -> None:
        self.index.append({'id': obj_id, **index_fields})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def api(self) -> ApiClient:
        return ApiClient(self.client(), UrlBuilder(BASE_URL))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path: str = request.url.path
        if request.method == 'PUT':
            self.puts[str(request.url)] = request.read()
            return httpx.Response(201)
        if path == '/api/accounts/':
            cname: str | None = request.url.params.get('cname')
            return httpx.Response(200, json=[a for a in self.accounts if a.get('cname') == cname])
        tenant: str | None = request.headers.get('x-tenant')
        self.tenant_headers.append(tenant)
        if self.require_tenant and tenant is None:
            return httpx.Response(403, json={'error': 'no tenant'})
        if path == '/api/search/':
            return self.search(request)
        match = FILE_CONTENT_RE.match(path)
        if match:
            blob: bytes | None = self.blobs.get(match['file_id'])
            return httpx.Response(200, content=blob) if blob is not None else httpx.Response(404)
        match = OBJECT_RE.match(path)
        if match:
            data: dict[str, object] | None = self.objects.get(match['kind'], {}).get(match['obj_id'])
            if data is None:
                return httpx.Response(404, json={'error': 'not found'})
            return httpx.Response(200, content=json.dumps(data).encode('utf-8'))
        return httpx.Response(404)

    def search(self, request: httpx.Request) -> httpx.Response:
        params: dict[str, str] = dict(request.url.params)
        self.search_calls.append(params)
        fq: str = params.get('fq', '')
        if fq in self.failing_filters:
            return httpx.Response(500)
        start: int = int(params.get('start', '0'))
        rows: int = int(params.get('rows', '10'))
        if self.scripted_pages is not None:
            ids: list[str] = self.scripted_pages.get(start, [])
            num_found: int = len({i for page in self.scripted_pages.values() for i in page})
        else:
            matching: list[dict[str, object]] = sorted(
                (doc for doc in self.index if matches(doc, fq)), key=lambda d: str(d['id'])
            )
            ids = [str(doc['id']) for doc in matching[start : start + rows]]
            num_found = len(matching)
        body: dict[str, object] = {'response': {'numFound': num_found, 'start': start, 'docs': [{'id': i} for i in ids]}}
        return httpx.Response(200, json=body)


def matches(doc: dict[str, object], fq: str) -> bool:
    for clause in fq.split(' AND '):
        match = CLAUSE_RE.match(clause.strip())
        if match is None:
            return False
        value: object = doc.get(match['field'])
        expected: str = match['value']
        if isinstance(value, list):
            if expected not in value:
                return False
        elif value != expected:
            return False
    return True
