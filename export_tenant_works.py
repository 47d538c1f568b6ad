# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Exports every work of a tenant -- with its files, embargo/lease state, and access controls --
  to a single streamed JSON document, for migration to another repository.
It's server-friendly, in that it makes synchronous requests with a slight sleep,
  pages through the search-index with a stable sort, and writes one record at a time
  so memory stays flat no matter how many works a tenant has.

Usage:
  uv run ./export_tenant_works.py dashboard.example.edu --output-dir "../output_dir"
  uv run ./export_tenant_works.py dashboard.example.edu --work-types Article,Book --public-only

Args:
  tenant_cname (required, positional)
  --public-only (optional) -- only export works whose visibility is `open`
  --work-types (optional) -- comma-separated subset of the registered work types
  --output-dir (optional) -- defaults to the current directory
  --batch-size (optional) -- search-index page size; defaults to 500
  --no-progress (optional) -- hides the progress bars

Output:
  <output-dir>/<tenant_cname>_works_data.json, shaped like:
  { "Article": [ {work-record}, ... ], "Book": [ ... ] }
"""

import argparse
import json
import logging
import os
import sys
import time
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO
from urllib.parse import quote

import httpx
import humanize
from tqdm import tqdm

## setup logging
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
log = logging.getLogger(__name__)
## prevent httpx from logging
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)  # or logging.ERROR if you prefer only errors
        lg.propagate = False  # don't bubble up to root


## constants
BASE = os.getenv('REPO_BASE_URL', 'http://localhost:3000').rstrip('/')
API_TOKEN = os.getenv('REPO_API_TOKEN', '')
TENANT_HEADER = 'X-Tenant'

DEFAULT_BATCH_SIZE = 500  # page size for the search-index
REQUEST_PAUSE_SECONDS = 0.2  # polite pause between requests
VOLATILE_FILE_FIELDS = ('id', 'created_at', 'updated_at')  # belong to the record's own envelope

POLICY_FIELDS: dict[str, dict[str, str]] = {
    'embargo': {
        'kind': 'Embargo',
        'object_kind': 'embargoes',
        'boundary_timestamp': 'embargo_release_date',
        'visibility_during': 'visibility_during_embargo',
        'visibility_after': 'visibility_after_embargo',
        'history': 'embargo_history',
    },
    'lease': {
        'kind': 'Lease',
        'object_kind': 'leases',
        'boundary_timestamp': 'lease_expiration_date',
        'visibility_during': 'visibility_during_lease',
        'visibility_after': 'visibility_after_lease',
        'history': 'lease_history',
    },
}

ACL_MODES: dict[str, str] = {'read': 'Read', 'write': 'Write'}
ACL_AGENT_TYPES: dict[str, str] = {'person': 'Person', 'group': 'Group'}

WORK_TYPES: tuple[str, ...] = (
    'AnschutzWork', 'ArchivalMaterial', 'Article', 'Book', 'BookContribution', 'ConferenceItem', 'Dataset',
    'DataManagementPlan', 'DenverArticle', 'DenverBook', 'DenverBookChapter', 'DenverDataset', 'DenverImage',
    'DenverMap', 'DenverMultimedia', 'DenverPresentationMaterial', 'DenverSerialPublication',
    'DenverThesisDissertationCapstone', 'ExhibitionItem', 'GrantRecord', 'LabNotebook', 'NsuGenericWork',
    'NsuArticle', 'OpenEducationalResource', 'Report', 'ResearchMethodology', 'Software', 'Minute',
    'TimeBasedMedia', 'ThesisOrDissertation', 'PacificArticle', 'PacificBook', 'PacificImage',
    'PacificThesisOrDissertation', 'PacificBookChapter', 'PacificMedia', 'PacificNewsClipping',
    'PacificPresentation', 'PacificTextWork', 'PacificUncategorized', 'Preprint', 'Presentation',
    'RedlandsArticle', 'RedlandsBook', 'RedlandsChaptersAndBookSection', 'RedlandsConferencesReportsAndPaper',
    'RedlandsOpenEducationalResource', 'RedlandsMedia', 'RedlandsStudentWork', 'UbiquityTemplateWork',
    'UnaArchivalItem', 'UnaArticle', 'UnaBook', 'UnaChaptersAndBookSection', 'UnaExhibition', 'UnaImage',
    'UnaOpenEducationalResource', 'UnaPresentation', 'UnaThesisOrDissertation', 'UnaTimeBasedMedia', 'UvaWork',
    'UngArticle', 'UngBook', 'UngBookChapter', 'UngDataset', 'UngImage', 'UngThesisDissertation',
    'UngTimeBasedMedia', 'UngPresentation', 'UngArchivalMaterial', 'LtuArticle', 'LtuBook', 'LtuBookChapter',
    'LtuDataset', 'LtuImage', 'LtuPresentation', 'LtuThesisDissertation', 'LtuTimeBasedMedia', 'LtuSerial',
    'LtuImageArtifact', 'OkcArticle', 'OkcBook', 'OkcArchivalAndLegalMaterial', 'OkcGenericWork', 'OkcImage',
    'OkcPresentation', 'OkcTimeBasedMedia', 'OkcChaptersAndBookSection', 'BcArticle', 'BcBook',
    'BcArchivalAndLegalMaterial', 'BcImage', 'BcPresentation', 'BcTimeBasedMedia', 'BcChaptersAndBookSection',
    'LacTimeBasedMedia', 'LacArchivalMaterial', 'LacImage', 'LacThesisDissertation', 'LacBook', 'EslnArticle',
    'EslnBook', 'EslnBookChapter', 'EslnDataset', 'EslnThesisDissertation', 'EslnPresentation',
    'EslnArchivalMaterial', 'EslnTemplateWork', 'GenericWork', 'Image',
)


## exceptions
class ExportError(Exception):
    """Base class for the errors this tool raises on purpose."""


class ObjectNotFoundError(ExportError):
    def __init__(self, kind: str, obj_id: str) -> None:
        super().__init__(f'{kind} ``{obj_id}`` not found')
        self.kind: str = kind
        self.obj_id: str = obj_id


class TenantNotFoundError(ExportError):
    pass


class TenantActivationError(ExportError):
    pass


class UnknownWorkTypeError(ExportError):
    pass


class AttributeBag(dict):
    """
    Holds "all the fields" of one repository object (work, file-set, collection, access-control, etc).
    - Keeps the object-api's key order; a missing key is distinct from a key holding null.
    - Offers explicit capability accessors (policy reference, access-control id, visibility)
      that return None when the object doesn't have the capability.
    - Smooths over multi-valued fields, which the repository often returns as one-element lists.
    """

    @classmethod
    def from_json(cls, data: object) -> 'AttributeBag':
        if not isinstance(data, dict):
            raise ValueError(f'expected a JSON object, got ``{type(data).__name__}``')
        return cls(data)

    def is_blank(self, name: str) -> bool:
        return _is_blank(self.get(name))

    def first(self, name: str) -> object | None:
        """
        Returns the field's value, or the first non-blank element when the field is a list.
        """
        value: object = self.get(name)
        if isinstance(value, (list, tuple)):
            return next((v for v in value if not _is_blank(v)), None)
        return None if _is_blank(value) else value

    def nested(self, name: str) -> 'AttributeBag | None':
        value: object = self.get(name)
        if isinstance(value, dict) and value:
            return AttributeBag(value)
        return None

    def without(self, *names: str) -> dict[str, object]:
        return {k: v for k, v in self.items() if k not in names}

    def policy_ref(self, policy_kind: str) -> str | None:
        ref: object = self.first(f'{policy_kind}_id')
        return str(ref) if ref is not None else None

    def access_control_id(self) -> str | None:
        acl_id: object = self.first('access_control_id')
        return str(acl_id) if acl_id is not None else None

    def visibility(self) -> str | None:
        vis: object = self.first('visibility')
        return str(vis) if vis is not None else None


class UrlBuilder:
    """
    Centralizes construction of the repository-api URLs used across the workflow.
    - Holds a configurable `base` host to support testing and overrides.
    """

    def __init__(self, base: str = BASE) -> None:
        self.base: str = base.rstrip('/')

    def search_url(self) -> str:
        return f'{self.base}/api/search/'

    def accounts_url(self) -> str:
        return f'{self.base}/api/accounts/'

    def object_url(self, kind: str, obj_id: str) -> str:
        return f'{self.base}/api/{kind}/{quote(obj_id, safe="")}/'

    def file_content_url(self, file_id: str) -> str:
        return f'{self.base}/api/files/{quote(file_id, safe="")}/content/'


class ApiClient:
    """
    Encapsulates HTTP interactions with the repository's account, object, and search apis.
    - Implements exponential backoff and small pre-flight sleeps.
    - Treats 5xx responses as retryable server errors.
    - Maps object-api 404s to ObjectNotFoundError so callers can tell "missing" from "broken".
    - Queries the search-index with explicit fields, rows, start, and sort.
    - Raises last encountered exception after exhausting retry budget.
    """

    def __init__(self, client: httpx.Client, urls: UrlBuilder | None = None) -> None:
        self.client: httpx.Client = client
        self.urls: UrlBuilder = urls if urls is not None else UrlBuilder()

    def get_with_retries(
        self, url: str, *, params: dict[str, str | int] | None = None, max_tries: int = 4, timeout_s: float = 30.0
    ) -> httpx.Response:
        last_exc: Exception | None = None
        for attempt in range(1, max_tries + 1):
            try:
                _sleep(REQUEST_PAUSE_SECONDS)
                resp: httpx.Response = self.client.get(url, params=params, timeout=timeout_s, follow_redirects=True)
                if resp.status_code >= 500:
                    raise httpx.HTTPStatusError(f'server error {resp.status_code}', request=resp.request, response=resp)
                return resp
            except (httpx.HTTPError, httpx.TransportError) as exc:
                last_exc = exc
                log.debug(f'attempt {attempt} for ``{url}`` failed: {exc}')
                _sleep(min(2**attempt, 15))
        assert last_exc is not None
        raise last_exc

    def search(
        self, filter_expression: str, *, rows: int, start: int, fields: str = 'id', sort: str = 'id asc'
    ) -> tuple[list[dict[str, object]], int]:
        """
        Runs one search-index page; returns the page's docs and the index's `numFound`.
        """
        params: dict[str, str | int] = {
            'q': '*:*',
            'fq': filter_expression,
            'fl': fields,
            'rows': rows,
            'start': start,
            'sort': sort,
        }
        log.debug(f'searching, ``{params}``')
        resp: httpx.Response = self.get_with_retries(self.urls.search_url(), params=params)
        resp.raise_for_status()
        data: dict[str, object] = resp.json()
        response: dict[str, object] = data.get('response', {}) or {}  # type: ignore[assignment]
        docs: list[dict[str, object]] = response.get('docs', []) or []  # type: ignore[assignment]
        num_found: int = int(response.get('numFound', 0) or 0)  # type: ignore[arg-type]
        return docs, num_found

    def fetch_object(self, kind: str, obj_id: str) -> AttributeBag:
        url: str = self.urls.object_url(kind, obj_id)
        log.debug(f'trying object url, ``{url}``')
        resp: httpx.Response = self.get_with_retries(url)
        if resp.status_code == 404:
            raise ObjectNotFoundError(kind, obj_id)
        resp.raise_for_status()
        return AttributeBag.from_json(resp.json())

    def find_accounts(self, cname: str) -> list[dict[str, object]]:
        resp: httpx.Response = self.get_with_retries(self.urls.accounts_url(), params={'cname': cname})
        resp.raise_for_status()
        data: object = resp.json()
        if isinstance(data, dict):
            data = data.get('accounts') or []
        return [entry for entry in data if isinstance(entry, dict)]  # type: ignore[union-attr]


class TenantSession:
    """
    Switches the shared ApiClient to one tenant, and back.
    - Looks up the tenant's account by cname; the account's `tenant` value is what gets activated.
    - Activation sets the tenant header on the shared httpx client.
    - reset() restores whatever header state existed before activate(); callers guarantee it with `finally`.
    """

    def __init__(self, api: ApiClient, cname: str) -> None:
        self.api: ApiClient = api
        self.cname: str = cname
        self.account: AttributeBag | None = None
        self._prior_header: str | None = api.client.headers.get(TENANT_HEADER)

    def lookup_account(self) -> AttributeBag:
        if _is_blank(self.cname):
            raise TenantNotFoundError('no tenant cname given')
        accounts: list[dict[str, object]] = self.api.find_accounts(self.cname)
        match: dict[str, object] | None = next(
            (a for a in accounts if a.get('cname', self.cname) == self.cname), None
        )
        if match is None or _is_blank(match.get('tenant')):
            raise TenantNotFoundError(f'no tenant found with cname: {self.cname}')
        return AttributeBag(match)

    def activate(self) -> str:
        self._prior_header = self.api.client.headers.get(TENANT_HEADER)
        try:
            self.account = self.lookup_account()
        except (httpx.HTTPError, ValueError) as exc:
            raise TenantActivationError(f'could not look up tenant ``{self.cname}``: {exc}') from exc
        tenant_name: str = str(self.account['tenant'])
        self.api.client.headers[TENANT_HEADER] = tenant_name
        log.info(f'activated tenant ``{tenant_name}`` for cname ``{self.cname}``')
        return tenant_name

    def reset(self) -> None:
        if self._prior_header is None:
            if TENANT_HEADER in self.api.client.headers:
                del self.api.client.headers[TENANT_HEADER]
        else:
            self.api.client.headers[TENANT_HEADER] = self._prior_header
        log.debug(f'reset tenant for cname ``{self.cname}``')


class WorkTypeDescriptor:
    """
    Describes one registered work type: the model name the index stores, and where its objects live.
    """

    def __init__(self, name: str, *, model_name: str | None = None, object_kind: str = 'works') -> None:
        self.name: str = name
        self.model_name: str = model_name or name
        self.object_kind: str = object_kind

    def index_filter(self, public_only: bool = False) -> str:
        fq: str = f'has_model_ssim:"{self.model_name}"'
        if public_only:
            fq = f'{fq} AND visibility_ssi:"open"'
        return fq

    def fetch(self, api: ApiClient, work_id: str) -> AttributeBag:
        return api.fetch_object(self.object_kind, work_id)


WORK_TYPE_REGISTRY: dict[str, WorkTypeDescriptor] = {name: WorkTypeDescriptor(name) for name in WORK_TYPES}


def lookup_work_type(name: str) -> WorkTypeDescriptor:
    """
    Returns the registered descriptor for a work-type name.
    Called by: TenantWorkExporter.select_work_types()
    """
    try:
        return WORK_TYPE_REGISTRY[name.strip()]
    except KeyError:
        raise UnknownWorkTypeError(f'work type ``{name}`` is not defined') from None


class RunContext:
    """
    Holds the mutable state of one tenant run, and is passed explicitly to each stage.
    - Tracks the ids already yielded per scope (work type or export category) for de-duplication.
    - Counts written records, suppressed duplicates, failures, and enrichment degradations.
    - Fixes the policy evaluation time once per run so every record is judged against the same "now".
    - Renders the end-of-run summary.
    """

    def __init__(self, tenant_cname: str, *, now: datetime | None = None) -> None:
        self.tenant_cname: str = tenant_cname
        self.started_at: datetime = datetime.now(timezone.utc)
        self.now: datetime = now if now is not None else self.started_at
        self.seen_ids: dict[str, set[str]] = {}
        self.records_written: dict[str, int] = {}
        self.duplicates: dict[str, list[str]] = {}
        self.failures: list[dict[str, str]] = []
        self.degradations: list[dict[str, str]] = []
        self.output_paths: list[Path] = []

    def seen_for(self, scope: str) -> set[str]:
        return self.seen_ids.setdefault(scope, set())

    def finish_scope(self, scope: str) -> None:
        ## the id set is only needed while that scope is being scanned
        self.seen_ids.pop(scope, None)

    def record_duplicate(self, scope: str, obj_id: str) -> None:
        self.duplicates.setdefault(scope, []).append(obj_id)

    def record_failure(self, stage: str, scope: str, obj_id: str, error: str) -> None:
        self.failures.append({'stage': stage, 'scope': scope, 'id': obj_id, 'error': error})

    def record_degradation(self, field: str, obj_id: str, error: str) -> None:
        self.degradations.append({'field': field, 'id': obj_id, 'error': error})

    def count_record(self, scope: str) -> None:
        self.records_written[scope] = self.records_written.get(scope, 0) + 1

    @property
    def total_records(self) -> int:
        return sum(self.records_written.values())

    @property
    def total_duplicates(self) -> int:
        return sum(len(ids) for ids in self.duplicates.values())

    def failures_for(self, stage: str) -> list[dict[str, str]]:
        return [f for f in self.failures if f['stage'] == stage]

    def summary_lines(self) -> list[str]:
        elapsed = datetime.now(timezone.utc) - self.started_at
        lines: list[str] = ['=' * 60, f'Export summary for tenant: {self.tenant_cname}', '=' * 60]
        lines.append(f'Records written: {humanize.intcomma(self.total_records)}')
        for scope, count in self.records_written.items():
            lines.append(f'  - {scope}: {humanize.intcomma(count)}')
        lines.append(f'Duplicates suppressed: {humanize.intcomma(self.total_duplicates)}')
        for scope, ids in self.duplicates.items():
            lines.append(f'  - {scope}: {", ".join(ids)}')
        lines.append(f'Failures: {humanize.intcomma(len(self.failures))}')
        for failure in self.failures:
            label: str = failure['id'] or '(no id)'
            lines.append(f'  - [{failure["stage"]}] {failure["scope"]} {label}: {failure["error"]}')
        lines.append(f'Enrichment degradations: {humanize.intcomma(len(self.degradations))}')
        for degradation in self.degradations:
            lines.append(f'  - {degradation["field"]} for {degradation["id"]}: {degradation["error"]}')
        for path in self.output_paths:
            size: int = path.stat().st_size if path.exists() else 0
            lines.append(f'Output: {path} ({humanize.naturalsize(size)})')
        lines.append(f'Elapsed: {humanize.precisedelta(elapsed, minimum_unit="seconds")}')
        lines.append('=' * 60)
        return lines


class TemporalPolicyResolver:
    """
    Normalizes an embargo or lease into one canonical, time-evaluated snapshot.
    - Reads the association (inline nested object, or fetched by `<kind>_id`) and the owning
      resource's own flattened fields; each sub-field independently prefers the association.
    - Normalizes timestamps to ISO-8601 UTC; an unparseable date counts as blank.
    - Collapses a policy with nothing set to None, meaning "no policy".
    - Computes `active` (boundary still in the future AND visibility_during is the current visibility)
      and `currently_applied_visibility` (the visibility half of that test).
    - Returns a (policy, err) pair; a fetch failure yields (None, message) and never raises.
    """

    def __init__(self, api: ApiClient | None = None) -> None:
        self.api: ApiClient | None = api

    def association_for(self, resource: AttributeBag, policy_kind: str) -> tuple[AttributeBag | None, str | None]:
        inline: AttributeBag | None = resource.nested(policy_kind)
        if inline is not None:
            return inline, None
        ref: str | None = resource.policy_ref(policy_kind)
        if ref is None or self.api is None:
            return None, None
        try:
            return self.api.fetch_object(POLICY_FIELDS[policy_kind]['object_kind'], ref), None
        except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
            return None, f'{policy_kind} ``{ref}`` could not be fetched: {exc}'

    def resolve(
        self, resource: AttributeBag, policy_kind: str, *, now: datetime | None = None
    ) -> tuple[dict[str, object] | None, str | None]:
        fields: dict[str, str] = POLICY_FIELDS[policy_kind]
        association, err = self.association_for(resource, policy_kind)
        if err:
            log.warning(f'resource ``{resource.get("id")}``: {err}')
            return None, err
        sources: list[AttributeBag] = [association, resource] if association is not None else [resource]

        boundary: datetime | None = self._pick_timestamp(sources, fields['boundary_timestamp'])
        during: str | None = self._pick_text(sources, fields['visibility_during'])
        after: str | None = self._pick_text(sources, fields['visibility_after'])
        history: list[str] = self._pick_history(sources, fields['history'])
        if boundary is None and during is None and after is None and not history:
            return None, None

        now_utc: datetime = now if now is not None else datetime.now(timezone.utc)
        applied: bool = during is not None and during == resource.visibility()
        active: bool = boundary is not None and boundary > now_utc and applied
        policy_id: object = association.get('id') if association is not None else None
        if _is_blank(policy_id):
            policy_id = resource.policy_ref(policy_kind)
        policy: dict[str, object] = {
            'id': policy_id,
            'kind': fields['kind'],
            'boundary_timestamp': _format_timestamp(boundary) if boundary is not None else None,
            'visibility_during': during,
            'visibility_after': after,
            'history': history,
            'active': active,
            'currently_applied_visibility': applied,
        }
        return policy, None

    def _pick_timestamp(self, sources: list[AttributeBag], name: str) -> datetime | None:
        for source in sources:
            raw: object = source.first(name)
            if raw is None:
                continue
            parsed: datetime | None = _parse_timestamp(raw)
            if parsed is not None:
                return parsed
            log.debug(f'dropping unparseable `{name}` value, ``{raw}``')
        return None

    def _pick_text(self, sources: list[AttributeBag], name: str) -> str | None:
        for source in sources:
            value: object = source.first(name)
            if value is not None:
                return str(value)
        return None

    def _pick_history(self, sources: list[AttributeBag], name: str) -> list[str]:
        for source in sources:
            value: object = source.get(name)
            if isinstance(value, (list, tuple)):
                entries: list[str] = [str(v) for v in value if not _is_blank(v)]
            elif not _is_blank(value):
                entries = [str(value)]
            else:
                entries = []
            if entries:
                return entries
        return []


class ChecksumParser:
    """
    Parses a fixity digest like `urn:sha1:abc123` or `sha1:abc123` into algorithm and value.
    """

    def parse(self, digest: object) -> tuple[dict[str, str], str | None]:
        """
        Returns (checksum-info, err). Only the first digest of a list is used.
        Keys that can't be resolved are omitted; blank input gives an empty dict.
        """
        try:
            if isinstance(digest, (list, tuple)):
                digest = digest[0] if digest else None
            if _is_blank(digest):
                return {}, None
            original: str = str(digest).strip()
            parts: list[str] = original.split(':')
            info: dict[str, str] = {'original': original}
            algorithm: str = ''
            value: str = ''
            if parts[0] == 'urn':
                if len(parts) >= 3:
                    algorithm, value = parts[1], parts[2]
            elif len(parts) >= 2:
                algorithm, value = parts[0], parts[1]
            if algorithm:
                info['algorithm'] = algorithm
            if value:
                info['value'] = value
            return info, None
        except Exception as exc:
            message: str = f'could not parse digest ``{digest!r}``: {exc}'
            log.warning(message)
            return {}, message


class AccessControlResolver:
    """
    Fetches an access-control record and flattens its permissions.
    - Accepts flat permissions (`mode`, `agent_type`, `agent_name`) and linked-data ones
      (`mode: [{id: ...acl#Read}]`, `agent: [{id: ...auth/person#someone}]`).
    - Normalizes modes to Read/Write and agent types to Person/Group; skips anything else.
    - Returns (snapshot, err); a blank id gives (None, None), a failed fetch gives (None, message).
    """

    def __init__(self, api: ApiClient) -> None:
        self.api: ApiClient = api

    def resolve(self, access_control_id: str | None) -> tuple[dict[str, object] | None, str | None]:
        if _is_blank(access_control_id):
            return None, None
        acl_id: str = str(access_control_id)
        try:
            record: AttributeBag = self.api.fetch_object('access_controls', acl_id)
        except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
            message: str = f'access control ``{acl_id}`` could not be fetched: {exc}'
            log.warning(message)
            return None, message
        default_target: str | None = _ref_id(record.get('access_to'))
        permissions: list[dict[str, object]] = []
        raw_permissions: object = record.get('permissions') or []
        for raw in raw_permissions if isinstance(raw_permissions, list) else []:
            entry: dict[str, object] | None = self.flatten_permission(raw, default_target)
            if entry is not None:
                permissions.append(entry)
        return {'id': record.get('id', acl_id), 'permissions': permissions}, None

    def flatten_permission(self, raw: object, default_target: str | None = None) -> dict[str, object] | None:
        if not isinstance(raw, dict):
            return None
        mode_token: str = _uri_fragment(_ref_id(raw.get('mode')))
        mode: str | None = ACL_MODES.get(mode_token.lower())

        if 'agent_type' in raw or 'agent_name' in raw:
            agent_token: str = str(raw.get('agent_type') or '')
            identifier: str = str(raw.get('agent_name') or '')
        else:
            agent_uri: str = _ref_id(raw.get('agent')) or ''
            prefix, _, identifier = agent_uri.rpartition('#')
            agent_token = prefix.rstrip('/').rsplit('/', 1)[-1]
        agent_type: str | None = ACL_AGENT_TYPES.get(agent_token.lower())

        if mode is None or agent_type is None or not identifier:
            log.debug(f'skipping permission we cannot normalize, ``{raw}``')
            return None
        return {
            'id': raw.get('id'),
            'mode': mode,
            'agent': {'type': agent_type, 'identifier': identifier},
            'target_id': _ref_id(raw.get('access_to')) or default_target,
        }


class PaginatedIndexWalker:
    """
    Pages through the search-index for one scope and yields each id once.
    - Requests only the `id` field, with an explicit stable sort, advancing `start` by the batch size.
    - Stops when a page comes back empty.
    - Drops ids already yielded for this scope (pagination drift on a live index) and records them
      in the RunContext; duplicates are reported, never fatal.
    """

    SORT = 'id asc'

    def __init__(self, api: ApiClient, context: RunContext, scope: str) -> None:
        self.api: ApiClient = api
        self.context: RunContext = context
        self.scope: str = scope
        self.num_found: int | None = None

    def scan_batches(self, filter_expression: str, batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[list[str]]:
        ## each scan starts from offset 0, so it starts with an empty seen-set
        self.context.finish_scope(self.scope)
        seen: set[str] = self.context.seen_for(self.scope)
        self.num_found = None
        start: int = 0
        while True:
            docs, num_found = self.api.search(
                filter_expression, rows=batch_size, start=start, fields='id', sort=self.SORT
            )
            if self.num_found is None:
                self.num_found = num_found
            if not docs:
                break
            batch: list[str] = []
            for doc in docs:
                doc_id: object = doc.get('id')
                if not isinstance(doc_id, str) or not doc_id:
                    log.debug(f'skipping index doc without an id, ``{doc}``')
                    continue
                if doc_id in seen:
                    log.info(f'suppressing duplicate id ``{doc_id}`` for {self.scope} at start={start}')
                    self.context.record_duplicate(self.scope, doc_id)
                    continue
                seen.add(doc_id)
                batch.append(doc_id)
            start += batch_size
            if batch:
                yield batch

    def scan(self, filter_expression: str, batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[str]:
        for batch in self.scan_batches(filter_expression, batch_size):
            yield from batch


class WorkRecordBuilder:
    """
    Composes one export record per work, with nested file records.
    - Each enrichment (policies, access control, admin set, collections, original file, checksum)
      degrades on its own: the failure is logged and recorded, the field is emitted empty.
    - Never fetches the work itself; a work that couldn't be loaded never reaches the builder.
    """

    def __init__(
        self,
        api: ApiClient,
        context: RunContext,
        *,
        policies: TemporalPolicyResolver | None = None,
        access: AccessControlResolver | None = None,
        checksums: ChecksumParser | None = None,
    ) -> None:
        self.api: ApiClient = api
        self.context: RunContext = context
        self.policies: TemporalPolicyResolver = policies if policies is not None else TemporalPolicyResolver(api)
        self.access: AccessControlResolver = access if access is not None else AccessControlResolver(api)
        self.checksums: ChecksumParser = checksums if checksums is not None else ChecksumParser()

    def build(self, work: AttributeBag, file_sets: list[AttributeBag]) -> dict[str, object]:
        visibility: str | None = work.visibility()
        embargo: dict[str, object] | None = self.resolve_policy(work, 'embargo')
        lease: dict[str, object] | None = self.resolve_policy(work, 'lease')
        record: dict[str, object] = dict(work)
        record.update(
            {
                'visibility': visibility,
                'embargo': embargo,
                'lease': lease,
                'admin_set_ref': self.admin_set_ref(work),
                'workflow_status': self.workflow_status(work),
                'collection_refs': self.collection_refs(work),
                'access_control': self.resolve_access(work),
                'access_effective': self.access_effective(visibility, embargo, lease),
                'files': [self.build_file(file_set) for file_set in file_sets],
            }
        )
        return record

    def build_file(self, file_set: AttributeBag) -> dict[str, object]:
        visibility: str | None = file_set.visibility()
        embargo: dict[str, object] | None = self.resolve_policy(file_set, 'embargo')
        lease: dict[str, object] | None = self.resolve_policy(file_set, 'lease')
        original_file: AttributeBag | None = self.original_file_for(file_set)
        checksum, err = self.checksums.parse(original_file.get('digest') if original_file is not None else None)
        if err:
            self.context.record_degradation('checksum', _id_of(file_set), err)
        record: dict[str, object] = file_set.without('original_file')
        record.update(
            {
                'visibility': visibility,
                'embargo': embargo,
                'lease': lease,
                'size_bytes': self.size_bytes(original_file),
                'checksum': checksum,
                'original_file_metadata': original_file.without(*VOLATILE_FILE_FIELDS) if original_file else {},
                'access_control': self.resolve_access(file_set),
                'access_effective': self.access_effective(visibility, embargo, lease),
            }
        )
        return record

    def resolve_policy(self, resource: AttributeBag, policy_kind: str) -> dict[str, object] | None:
        policy, err = self.policies.resolve(resource, policy_kind, now=self.context.now)
        if err:
            self.context.record_degradation(policy_kind, _id_of(resource), err)
        return policy

    def resolve_access(self, resource: AttributeBag) -> dict[str, object] | None:
        snapshot, err = self.access.resolve(resource.access_control_id())
        if err:
            self.context.record_degradation('access_control', _id_of(resource), err)
        return snapshot

    def original_file_for(self, file_set: AttributeBag) -> AttributeBag | None:
        inline: AttributeBag | None = file_set.nested('original_file')
        if inline is not None:
            return inline
        file_id: object = file_set.first('original_file_id')
        if file_id is None:
            return None
        try:
            return self.api.fetch_object('files', str(file_id))
        except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
            message: str = f'original file ``{file_id}`` could not be fetched: {exc}'
            log.warning(message)
            self.context.record_degradation('original_file', _id_of(file_set), message)
            return None

    @staticmethod
    def size_bytes(original_file: AttributeBag | None) -> int:
        if original_file is None:
            return 0
        raw: object = original_file.first('file_size')
        if raw is None:
            raw = original_file.first('size')
        if isinstance(raw, bool):
            return 0
        if isinstance(raw, int):
            return raw
        if isinstance(raw, str) and raw.strip().isdigit():
            return int(raw.strip())
        return 0

    @staticmethod
    def workflow_status(work: AttributeBag) -> str | None:
        status: object = work.first('workflow_state_name')
        return str(status) if status is not None else None

    def admin_set_ref(self, work: AttributeBag) -> dict[str, object] | None:
        admin_set_id: object = work.first('admin_set_id')
        if admin_set_id is None:
            return None
        try:
            return dict(self.api.fetch_object('admin_sets', str(admin_set_id)))
        except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
            message: str = f'admin set ``{admin_set_id}`` could not be fetched: {exc}'
            log.warning(message)
            self.context.record_degradation('admin_set_ref', _id_of(work), message)
            return {'id': admin_set_id}

    def collection_refs(self, work: AttributeBag) -> list[dict[str, object]]:
        raw_ids: object = work.get('member_of_collection_ids') or []
        collection_ids: list[object] = raw_ids if isinstance(raw_ids, list) else [raw_ids]
        refs: list[dict[str, object]] = []
        for collection_id in collection_ids:
            if _is_blank(collection_id):
                continue
            try:
                refs.append(dict(self.api.fetch_object('collections', str(collection_id))))
            except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
                message: str = f'collection ``{collection_id}`` could not be fetched: {exc}'
                log.warning(message)
                self.context.record_degradation('collection_refs', _id_of(work), message)
                refs.append({'id': collection_id})
        return refs

    @staticmethod
    def access_effective(
        visibility: str | None, embargo: dict[str, object] | None, lease: dict[str, object] | None
    ) -> dict[str, object]:
        return {
            'visibility': visibility,
            'under_embargo': bool(embargo and embargo.get('active')),
            'under_lease': bool(lease and lease.get('active')),
        }


class StreamingJSONWriter:
    """
    Streams a JSON object of `{ key: [record, ...], ... }` to a file, one record at a time.
    - open() writes `{`; a key (and its `[`) is only written when its first record arrives,
      so keys with no records never appear.
    - Places commas between keys and between records with one "first element" flag per level.
    - Never buffers more than the record being written.
    - As a context manager, always closes the document and the file -- even when an error
      escapes mid-stream -- so what was written stays parseable.
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = path
        self.sink: TextIO | None = None
        self.keys_written: list[str] = []
        self.current_key: str | None = None
        self.records_in_key: int = 0

    def open(self) -> None:
        self.sink = self.path.open('w', encoding='utf-8')
        self.sink.write('{\n')

    def write_record(self, key: str, record: dict[str, object]) -> None:
        """
        Writes one record under `key`; a record that can't be encoded raises before anything is written.
        """
        sink: TextIO = self._require_sink()
        if key != self.current_key and key in self.keys_written:
            raise ValueError(f'key ``{key}`` was already closed')
        encoded: str = encode_record(record)
        if key != self.current_key:
            self.end_key()
            if self.keys_written:
                sink.write(',\n')
            sink.write(f'{encode_record(key)}: [\n')
            self.keys_written.append(key)
            self.current_key = key
            self.records_in_key = 0
        if self.records_in_key:
            sink.write(',\n')
        sink.write(encoded)
        self.records_in_key += 1

    def end_key(self) -> None:
        if self.current_key is None:
            return
        self._require_sink().write('\n]')
        self.current_key = None

    def close(self) -> None:
        if self.sink is None:
            return
        try:
            self.end_key()
            self.sink.write('\n}\n')
        finally:
            self.sink.close()
            self.sink = None

    def _require_sink(self) -> TextIO:
        if self.sink is None:
            raise RuntimeError('writer is not open')
        return self.sink

    def __enter__(self) -> 'StreamingJSONWriter':
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            log.warning(f'closing ``{self.path}`` early after error: {exc}')
        self.close()


class StreamingJSONArrayWriter:
    """
    Streams a JSON array `[record, ...]` to a file, one record at a time; same guarantees as StreamingJSONWriter.
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = path
        self.sink: TextIO | None = None
        self.records_written: int = 0

    def open(self) -> None:
        self.sink = self.path.open('w', encoding='utf-8')
        self.sink.write('[\n')

    def write_record(self, record: dict[str, object]) -> None:
        if self.sink is None:
            raise RuntimeError('writer is not open')
        encoded: str = encode_record(record)
        if self.records_written:
            self.sink.write(',\n')
        self.sink.write(encoded)
        self.records_written += 1

    def close(self) -> None:
        if self.sink is None:
            return
        try:
            self.sink.write('\n]\n')
        finally:
            self.sink.close()
            self.sink = None

    def __enter__(self) -> 'StreamingJSONArrayWriter':
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            log.warning(f'closing ``{self.path}`` early after error: {exc}')
        self.close()


class TenantWorkExporter:
    """
    Coordinates one tenant's works export using injected objects (eg ApiClient, WorkRecordBuilder, etc).
    - Activates the tenant and guarantees reset, even on failure.
    - Resolves requested work-type names against the registry; unknown names are skipped.
    - Per work type: walks the index in batches, loads each work and its file-sets,
      builds the record, and streams it to the writer before the next batch is fetched.
    - Keeps per-id and per-work-type failures local; only tenant activation
      and the output file can abort the run.
    """

    def __init__(
        self,
        api: ApiClient,
        tenant_cname: str,
        output_dir: Path,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        public_only: bool = False,
        show_progress: bool = True,
        now: datetime | None = None,
    ) -> None:
        self.api: ApiClient = api
        self.tenant_cname: str = tenant_cname
        self.output_dir: Path = output_dir
        self.batch_size: int = batch_size
        self.public_only: bool = public_only
        self.show_progress: bool = show_progress
        self.context: RunContext = RunContext(tenant_cname, now=now)
        self.builder: WorkRecordBuilder = WorkRecordBuilder(api, self.context)

    def output_path(self) -> Path:
        return self.output_dir / f'{self.tenant_cname}_works_data.json'

    def select_work_types(self, names: list[str]) -> list[WorkTypeDescriptor]:
        descriptors: list[WorkTypeDescriptor] = []
        for name in names:
            if _is_blank(name):
                continue
            try:
                descriptor: WorkTypeDescriptor = lookup_work_type(name)
            except UnknownWorkTypeError as exc:
                log.warning(f'{exc}; skipping')
                self.context.record_failure('config', name.strip(), '', str(exc))
                continue
            if descriptor not in descriptors:
                descriptors.append(descriptor)
        return descriptors

    def run(self, work_type_names: list[str]) -> RunContext:
        """
        Exports all requested work types for the tenant; always returns the run's context.
        Called by: main()
        """
        session = TenantSession(self.api, self.tenant_cname)
        try:
            session.activate()
            descriptors: list[WorkTypeDescriptor] = self.select_work_types(work_type_names)
            path: Path = self.output_path()
            self.context.output_paths.append(path)
            with StreamingJSONWriter(path) as writer:
                for descriptor in descriptors:
                    self.export_work_type(descriptor, writer)
            log.info(f'finished extracting works for tenant ``{self.tenant_cname}``')
        except TenantNotFoundError as exc:
            log.error(f'{exc}')
            self.context.record_failure('config', 'tenant', self.tenant_cname, str(exc))
        except (TenantActivationError, OSError) as exc:
            log.error(f'aborting tenant ``{self.tenant_cname}``: {exc}')
            self.context.record_failure('fatal', 'tenant', self.tenant_cname, str(exc))
        except Exception as exc:
            log.exception(f'unexpected error processing tenant ``{self.tenant_cname}``')
            self.context.record_failure('fatal', 'tenant', self.tenant_cname, repr(exc))
        finally:
            session.reset()
        return self.context

    def export_work_type(self, descriptor: WorkTypeDescriptor, writer: StreamingJSONWriter) -> None:
        walker = PaginatedIndexWalker(self.api, self.context, descriptor.name)
        progress = tqdm(desc=f'Exporting {descriptor.name}', unit='work', disable=not self.show_progress)
        try:
            for batch in walker.scan_batches(descriptor.index_filter(self.public_only), self.batch_size):
                if progress.total is None and walker.num_found:
                    progress.total = walker.num_found
                    progress.refresh()
                for work_id in batch:
                    self.export_and_write(descriptor, work_id, writer)
                    progress.update(1)
        except (httpx.HTTPError, ValueError) as exc:
            log.error(f'index scan for {descriptor.name} failed; moving on: {exc}')
            self.context.record_failure('index', descriptor.name, '', str(exc))
        finally:
            progress.close()
            writer.end_key()
            self.context.finish_scope(descriptor.name)

    def export_and_write(self, descriptor: WorkTypeDescriptor, work_id: str, writer: StreamingJSONWriter) -> None:
        """
        Builds and writes one work; a failure here is recorded against that id and never ends the scan.
        Called by: export_work_type()
        """
        try:
            record: dict[str, object] | None = self.export_work(descriptor, work_id)
            if record is None:
                return
            writer.write_record(descriptor.name, record)
        except OSError:
            raise
        except Exception as exc:
            log.exception(f'could not build {descriptor.name} ``{work_id}``; skipping')
            self.context.record_failure('build', descriptor.name, work_id, repr(exc))
            return
        self.context.count_record(descriptor.name)

    def export_work(self, descriptor: WorkTypeDescriptor, work_id: str) -> dict[str, object] | None:
        try:
            work: AttributeBag = descriptor.fetch(self.api, work_id)
        except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
            log.warning(f'could not load {descriptor.name} ``{work_id}``; skipping: {exc}')
            self.context.record_failure('load', descriptor.name, work_id, str(exc))
            return None
        return self.builder.build(work, self.load_file_sets(work))

    def load_file_sets(self, work: AttributeBag) -> list[AttributeBag]:
        raw_ids: object = work.get('file_set_ids') or []
        file_set_ids: list[object] = raw_ids if isinstance(raw_ids, list) else [raw_ids]
        file_sets: list[AttributeBag] = []
        for file_set_id in file_set_ids:
            if _is_blank(file_set_id):
                continue
            try:
                file_sets.append(self.api.fetch_object('file_sets', str(file_set_id)))
            except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
                message: str = f'file set ``{file_set_id}`` could not be loaded: {exc}'
                log.warning(message)
                self.context.record_degradation('files', _id_of(work), message)
        return file_sets


class UsageExitParser(argparse.ArgumentParser):
    """
    ArgumentParser that exits with status 1 (not argparse's 2) on a usage error.
    """

    def error(self, message: str):  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f'{self.prog}: error: {message}\n')


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Takes exactly one positional argument, the tenant cname; anything missing or extra exits 1 with usage.
    - Exposes a parse helper to support testing with custom argv.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = UsageExitParser(description='Export all works (with files, policies, and access controls) for a tenant.')
        parser.add_argument('tenant_cname', help='Tenant cname like dashboard.example.edu')
        parser.add_argument('--public-only', action='store_true', help='Only export publicly visible works.')
        parser.add_argument(
            '--work-types',
            default=None,
            metavar='NAMES',
            help='Optional. Comma-separated work types to export (default: all registered work types).',
        )
        parser.add_argument('--output-dir', default='.', help='Directory to write outputs (default: current directory).')
        parser.add_argument(
            '--batch-size',
            type=positive_int,
            default=DEFAULT_BATCH_SIZE,
            metavar='INTEGER',
            help=f'Search-index page size (default: {DEFAULT_BATCH_SIZE}).',
        )
        parser.add_argument('--no-progress', action='store_true', help='Hide progress bars.')
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


def positive_int(value: str) -> int:
    number: int = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f'must be at least 1, got {value}')
    return number


def build_http_client(user_agent: str) -> httpx.Client:
    """
    Creates the shared httpx client (headers, timeouts, limits).
    """
    headers: dict[str, str] = {'user-agent': user_agent}
    if API_TOKEN:
        headers['authorization'] = f'Bearer {API_TOKEN}'
    timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=60.0, write=60.0, pool=30.0)
    limits: httpx.Limits = httpx.Limits(max_keepalive_connections=10, max_connections=10)
    return httpx.Client(headers=headers, timeout=timeout, limits=limits)


def encode_record(record: object) -> str:
    """
    Encodes a record as strict JSON that is safe to write to a UTF-8 sink.
    - Raises ValueError for NaN/Infinity, which have no JSON form.
    - Text that can't be UTF-8 encoded (lone surrogates) is written with `\\u` escapes instead.
    Called by: StreamingJSONWriter.write_record(), StreamingJSONArrayWriter.write_record()
    """
    text: str = json.dumps(record, ensure_ascii=False, allow_nan=False, default=str)
    try:
        text.encode('utf-8')
    except UnicodeEncodeError:
        text = json.dumps(record, ensure_ascii=True, allow_nan=False, default=str)
    return text


def _is_blank(value: object) -> bool:
    """
    Treats None, whitespace-only strings, and empty (or all-blank) containers as blank.
    """
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set)):
        return all(_is_blank(v) for v in value)
    if isinstance(value, dict):
        return not value
    return False


def _id_of(resource: AttributeBag) -> str:
    return str(resource.get('id') or '(unknown)')


def _ref_id(value: object) -> str | None:
    """
    Returns the id of a reference given as a string, a `{'id': ...}` dict, or a list of either.
    """
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get('id')
    if _is_blank(value):
        return None
    return str(value)


def _uri_fragment(value: str | None) -> str:
    """
    Returns the part of a URI after `#` (or after the last `/`); plain tokens come back unchanged.
    """
    if not value:
        return ''
    if '#' in value:
        return value.rsplit('#', 1)[-1]
    return value.rstrip('/').rsplit('/', 1)[-1]


def _parse_timestamp(value: object) -> datetime | None:
    """
    Parses an ISO-8601 timestamp (or bare date) into an aware UTC datetime; returns None when it can't.
    Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed: datetime = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def _sleep(backoff_s: float) -> None:
    """
    Sleeps for given seconds; centralizes sleep for easier tweaking.
    """
    time.sleep(backoff_s)


def main(argv: list[str] | None = None) -> int:
    """
    Exports a tenant's works to `<output-dir>/<tenant_cname>_works_data.json` and prints a run summary.

    Flow:
    - Parses CLI args: tenant cname, optional public-only flag, work types, output dir, batch size.
    - Creates an httpx client with headers, timeouts, and connection limits.
    - Activates the tenant (looked up by cname); resets it no matter what happens.
    - For each work type: pages the index with a stable sort, de-duplicates ids,
      loads each work and its file-sets, builds the record, and streams it to the output file.
    - Prints the summary (records, duplicates, failures, degradations, output size).

    Called by: dundermain
    """
    ## handle args --------------------------------------------------
    args: argparse.Namespace = CLI.parse_args(argv)
    tenant_cname: str = args.tenant_cname.strip()
    work_type_names: list[str] = args.work_types.split(',') if args.work_types else list(WORK_TYPES)
    out_dir: Path = Path(args.output_dir).expanduser().resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    ## run the export -----------------------------------------------
    print(f'Starting extraction for tenant cname: {tenant_cname}')
    with build_http_client('tenant-works-exporter/1.0') as client:
        api = ApiClient(client, UrlBuilder(BASE))
        exporter = TenantWorkExporter(
            api,
            tenant_cname,
            out_dir,
            batch_size=args.batch_size,
            public_only=args.public_only,
            show_progress=not args.no_progress,
        )
        context: RunContext = exporter.run(work_type_names)

    ## wrap up output -----------------------------------------------
    print('\n'.join(context.summary_lines()))
    return 0

    ## end def main()


if __name__ == '__main__':
    raise SystemExit(main())
