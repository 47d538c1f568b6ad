# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Exports a tenant's simpler record categories -- users, roles, collections, access controls, admin sets --
  each to its own streamed JSON array.

Usage:
  uv run ./export_tenant_records.py dashboard.example.edu --output-dir "../output_dir"
  uv run ./export_tenant_records.py dashboard.example.edu --category users --category roles

Args:
  tenant_cname (required, positional)
  --category (optional, repeatable) -- defaults to all categories
  --public-only (optional) -- only export publicly visible collections
  --output-dir (optional) -- defaults to the current directory
  --batch-size (optional) -- search-index page size; defaults to 500
  --no-progress (optional) -- hides the progress bars

Output:
  <output-dir>/<tenant_cname>_<category>.json, shaped like: [ {record}, ... ]
"""

import argparse
import logging
from collections.abc import Callable
from pathlib import Path

import httpx
from tqdm import tqdm

from export_tenant_works import (
    BASE,
    DEFAULT_BATCH_SIZE,
    ApiClient,
    AttributeBag,
    ObjectNotFoundError,
    PaginatedIndexWalker,
    RunContext,
    StreamingJSONArrayWriter,
    TenantActivationError,
    TenantNotFoundError,
    TenantSession,
    UrlBuilder,
    UsageExitParser,
    build_http_client,
    positive_int,
)

log = logging.getLogger(__name__)


## constants
USER_SECRET_FIELDS = ('encrypted_password', 'reset_password_token', 'remember_created_at')
ROLE_FIELDS = ('id', 'name', 'resource_type', 'resource_id', 'created_at', 'updated_at')


class RecordCategory:
    """
    Describes one export category: how to find its objects in the index, where they live, and how to shape them.
    """

    def __init__(
        self,
        name: str,
        *,
        model_name: str,
        object_kind: str,
        shaper: Callable[['TenantRecordExporter', AttributeBag], dict[str, object]],
        has_visibility: bool = False,
    ) -> None:
        self.name: str = name
        self.model_name: str = model_name
        self.object_kind: str = object_kind
        self.shaper = shaper
        self.has_visibility: bool = has_visibility

    def index_filter(self, public_only: bool = False) -> str:
        fq: str = f'has_model_ssim:"{self.model_name}"'
        if public_only and self.has_visibility:
            fq = f'{fq} AND visibility_ssi:"open"'
        return fq


def shape_user(exporter: 'TenantRecordExporter', user: AttributeBag) -> dict[str, object]:
    """
    Drops credential fields and flattens roles to their names.
    """
    record: dict[str, object] = user.without(*USER_SECRET_FIELDS)
    if 'roles' in user:
        raw_roles: object = user.get('roles') or []
        roles: list[object] = raw_roles if isinstance(raw_roles, list) else [raw_roles]
        record['roles'] = [r.get('name') if isinstance(r, dict) else str(r) for r in roles]
    return record


def shape_role(exporter: 'TenantRecordExporter', role: AttributeBag) -> dict[str, object]:
    return {field: role.get(field) for field in ROLE_FIELDS}


def shape_collection(exporter: 'TenantRecordExporter', collection: AttributeBag) -> dict[str, object]:
    record: dict[str, object] = dict(collection)
    record['works'] = exporter.collection_members(collection)
    return record


def shape_plain(exporter: 'TenantRecordExporter', bag: AttributeBag) -> dict[str, object]:
    return dict(bag)


CATEGORIES: dict[str, RecordCategory] = {
    'users': RecordCategory('users', model_name='User', object_kind='users', shaper=shape_user),
    'roles': RecordCategory('roles', model_name='Role', object_kind='roles', shaper=shape_role),
    'collections': RecordCategory(
        'collections', model_name='Collection', object_kind='collections', shaper=shape_collection, has_visibility=True
    ),
    'access_controls': RecordCategory(
        'access_controls', model_name='Hydra::AccessControl', object_kind='access_controls', shaper=shape_plain
    ),
    'admin_sets': RecordCategory('admin_sets', model_name='AdminSet', object_kind='admin_sets', shaper=shape_plain),
}


class TenantRecordExporter:
    """
    Coordinates one tenant's category exports.
    - Activates the tenant once and resets it in `finally`.
    - Streams each category to its own JSON array, one record at a time.
    - Skips (and records) objects that the index lists but the object-api can't load.
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
    ) -> None:
        self.api: ApiClient = api
        self.tenant_cname: str = tenant_cname
        self.output_dir: Path = output_dir
        self.batch_size: int = batch_size
        self.public_only: bool = public_only
        self.show_progress: bool = show_progress
        self.context: RunContext = RunContext(tenant_cname)

    def output_path(self, category: RecordCategory) -> Path:
        return self.output_dir / f'{self.tenant_cname}_{category.name}.json'

    def run(self, category_names: list[str]) -> RunContext:
        session = TenantSession(self.api, self.tenant_cname)
        try:
            session.activate()
            for name in category_names:
                category: RecordCategory | None = CATEGORIES.get(name)
                if category is None:
                    log.warning(f'category ``{name}`` is not defined; skipping')
                    self.context.record_failure('config', name, '', f'category ``{name}`` is not defined')
                    continue
                self.export_category(category)
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

    def export_category(self, category: RecordCategory) -> None:
        path: Path = self.output_path(category)
        self.context.output_paths.append(path)
        walker = PaginatedIndexWalker(self.api, self.context, category.name)
        progress = tqdm(desc=f'Exporting {category.name}', unit='record', disable=not self.show_progress)
        with StreamingJSONArrayWriter(path) as writer:
            try:
                for obj_id in walker.scan(category.index_filter(self.public_only), self.batch_size):
                    self.export_and_write(category, obj_id, writer)
                    progress.update(1)
            except (httpx.HTTPError, ValueError) as exc:
                log.error(f'index scan for {category.name} failed; moving on: {exc}')
                self.context.record_failure('index', category.name, '', str(exc))
            finally:
                progress.close()
                self.context.finish_scope(category.name)

    def export_and_write(self, category: RecordCategory, obj_id: str, writer: StreamingJSONArrayWriter) -> None:
        try:
            bag: AttributeBag = self.api.fetch_object(category.object_kind, obj_id)
        except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
            log.warning(f'could not load {category.name} ``{obj_id}``; skipping: {exc}')
            self.context.record_failure('load', category.name, obj_id, str(exc))
            return
        try:
            writer.write_record(category.shaper(self, bag))
        except OSError:
            raise
        except Exception as exc:
            log.exception(f'could not build {category.name} ``{obj_id}``; skipping')
            self.context.record_failure('build', category.name, obj_id, repr(exc))
            return
        self.context.count_record(category.name)

    def collection_members(self, collection: AttributeBag) -> list[dict[str, object]]:
        """
        Lists the works that are members of a collection, each tagged with its title and work type.
        Called by: shape_collection()
        """
        collection_id: str = str(collection.get('id') or '')
        if not collection_id:
            return []
        scope: str = f'collection-members:{collection_id}'
        walker = PaginatedIndexWalker(self.api, self.context, scope)
        members: list[dict[str, object]] = []
        try:
            for work_id in walker.scan(f'member_of_collection_ids_ssim:"{collection_id}"', self.batch_size):
                try:
                    work: AttributeBag = self.api.fetch_object('works', work_id)
                except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
                    message: str = f'member work ``{work_id}`` could not be loaded: {exc}'
                    log.warning(message)
                    self.context.record_degradation('works', collection_id, message)
                    continue
                member: dict[str, object] = dict(work)
                member['work_title'] = work.first('title')
                member['work_type'] = work.first('has_model')
                members.append(member)
        except (httpx.HTTPError, ValueError) as exc:
            message = f'member scan failed: {exc}'
            log.warning(message)
            self.context.record_degradation('works', collection_id, message)
        finally:
            self.context.finish_scope(scope)
        return members


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Takes exactly one positional argument, the tenant cname; anything missing or extra exits 1 with usage.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = UsageExitParser(description='Export users, roles, collections, access controls, and admin sets for a tenant.')
        parser.add_argument('tenant_cname', help='Tenant cname like dashboard.example.edu')
        parser.add_argument(
            '--category',
            action='append',
            choices=sorted(CATEGORIES),
            default=None,
            help='Optional, repeatable. Category to export (default: all).',
        )
        parser.add_argument('--public-only', action='store_true', help='Only export publicly visible collections.')
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


def main(argv: list[str] | None = None) -> int:
    """
    Exports each requested category to `<output-dir>/<tenant_cname>_<category>.json` and prints a run summary.
    Called by: dundermain
    """
    args: argparse.Namespace = CLI.parse_args(argv)
    tenant_cname: str = args.tenant_cname.strip()
    category_names: list[str] = args.category or list(CATEGORIES)
    out_dir: Path = Path(args.output_dir).expanduser().resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    print(f'Starting record extraction for tenant cname: {tenant_cname}')
    with build_http_client('tenant-records-exporter/1.0') as client:
        api = ApiClient(client, UrlBuilder(BASE))
        exporter = TenantRecordExporter(
            api,
            tenant_cname,
            out_dir,
            batch_size=args.batch_size,
            public_only=args.public_only,
            show_progress=not args.no_progress,
        )
        context: RunContext = exporter.run(category_names)

    print('\n'.join(context.summary_lines()))
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
