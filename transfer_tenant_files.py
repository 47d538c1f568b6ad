# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Transfers the original file of every file-set of a tenant: either downloads it to a local folder,
  or streams it straight to a destination store with an HTTP PUT.
Each file is retried on its own; failures are collected and listed at the end, and never stop the run.

Usage:
  uv run ./transfer_tenant_files.py dashboard.example.edu --download-dir "../downloads"
  uv run ./transfer_tenant_files.py dashboard.example.edu --dest-base-url "https://bucket.example.org/migration"

Args:
  tenant_cname (required, positional)
  --download-dir (optional) -- defaults to ./downloads; ignored when --dest-base-url is given
  --dest-base-url (optional) -- copy to `<dest-base-url>/<tenant_folder>/<file_name>` instead of downloading
  --public-only (optional) -- only transfer files of publicly visible file-sets
  --batch-size (optional) -- search-index page size; defaults to 500
  --no-progress (optional) -- hides the progress bar
"""

import argparse
import logging
import re
from pathlib import Path

import httpx
import humanize
from tqdm import tqdm

import export_tenant_works
from export_tenant_works import (
    BASE,
    DEFAULT_BATCH_SIZE,
    REQUEST_PAUSE_SECONDS,
    ApiClient,
    AttributeBag,
    ObjectNotFoundError,
    PaginatedIndexWalker,
    RunContext,
    TenantActivationError,
    TenantNotFoundError,
    TenantSession,
    UrlBuilder,
    UsageExitParser,
    WorkRecordBuilder,
    build_http_client,
    positive_int,
)

log = logging.getLogger(__name__)


## constants
FILE_SET_FILTER = 'has_model_ssim:"FileSet"'
MIME_EXTENSIONS: dict[str, str] = {
    'application/pdf': '.pdf',
    'image/jpeg': '.jpg',
    'image/png': '.png',
    'image/gif': '.gif',
    'image/tiff': '.tiff',
    'application/msword': '.doc',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document': '.docx',
    'application/vnd.openxmlformats-officedocument.presentationml.presentation': '.pptx',
    'application/vnd.ms-excel': '.xls',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet': '.xlsx',
    'text/plain': '.txt',
    'text/csv': '.csv',
    'video/mp4': '.mp4',
    'audio/mpeg': '.mp3',
}


def sanitize_filename(filename: str) -> str:
    return re.sub(r'[^0-9A-Za-z.\-_]', '_', filename)


def extension_for(mime_type: object) -> str:
    return MIME_EXTENSIONS.get(str(mime_type or ''), '')


def transfer_name(file_set: AttributeBag, original_file: AttributeBag) -> str:
    """
    Builds `<file_set_id>_<sanitized title><extension>`; the id prefix keeps same-titled files apart.
    """
    file_set_id: str = str(file_set.get('id') or '')
    title: object = file_set.first('title') or file_set_id
    file_name: str = sanitize_filename(str(title))
    extension: str = extension_for(original_file.first('mime_type'))
    if extension and not file_name.endswith(extension):
        file_name += extension
    return f'{file_set_id}_{file_name}'


class BlobTransfer:
    """
    Moves blob bytes with per-file retries and streaming, so no file is ever held in memory.
    - download() streams to `<name>.part` then renames, so a failed attempt never leaves a truncated file.
    - copy() streams the GET body straight into a PUT against the destination, using a separate
      client so repository credentials never reach the destination.
    - Both return the number of bytes moved, and raise the last error after exhausting retries.
    """

    def __init__(
        self,
        client: httpx.Client,
        *,
        dest_client: httpx.Client | None = None,
        max_tries: int = 4,
        timeout_s: float = 120.0,
    ) -> None:
        self.client: httpx.Client = client
        self.dest_client: httpx.Client = dest_client if dest_client is not None else client
        self.max_tries: int = max_tries
        self.timeout_s: float = timeout_s

    def download(self, source_ref: str, local_path: Path) -> int:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        partial_path: Path = local_path.with_name(f'{local_path.name}.part')
        last_exc: Exception | None = None
        try:
            for attempt in range(1, self.max_tries + 1):
                try:
                    export_tenant_works._sleep(REQUEST_PAUSE_SECONDS)
                    with self.client.stream('GET', source_ref, timeout=self.timeout_s, follow_redirects=True) as resp:
                        resp.raise_for_status()
                        with partial_path.open('wb') as fh:
                            for chunk in resp.iter_bytes():
                                fh.write(chunk)
                    partial_path.replace(local_path)
                    return local_path.stat().st_size
                except (httpx.HTTPError, httpx.TransportError) as exc:
                    last_exc = exc
                    log.debug(f'download attempt {attempt} for ``{source_ref}`` failed: {exc}')
                    export_tenant_works._sleep(min(2**attempt, 15))
        finally:
            ## gone already after a successful replace()
            partial_path.unlink(missing_ok=True)
        assert last_exc is not None
        raise last_exc

    def copy(self, source_ref: str, dest_ref: str) -> int:
        last_exc: Exception | None = None
        for attempt in range(1, self.max_tries + 1):
            try:
                export_tenant_works._sleep(REQUEST_PAUSE_SECONDS)
                with self.client.stream('GET', source_ref, timeout=self.timeout_s, follow_redirects=True) as resp:
                    resp.raise_for_status()
                    sent: list[int] = [0]

                    def chunks():
                        for chunk in resp.iter_bytes():
                            sent[0] += len(chunk)
                            yield chunk

                    put_resp: httpx.Response = self.dest_client.put(dest_ref, content=chunks(), timeout=self.timeout_s)
                    put_resp.raise_for_status()
                return sent[0]
            except (httpx.HTTPError, httpx.TransportError) as exc:
                last_exc = exc
                log.debug(f'copy attempt {attempt} for ``{source_ref}`` failed: {exc}')
                export_tenant_works._sleep(min(2**attempt, 15))
        assert last_exc is not None
        raise last_exc


class TenantFileTransfer:
    """
    Walks a tenant's file-sets and transfers each original file.
    - Activates the tenant and resets it in `finally`.
    - Skips file-sets without an original file.
    - Collects every failure (file-set id, file name, source, error) for the summary.
    """

    def __init__(
        self,
        api: ApiClient,
        tenant_cname: str,
        transfer: BlobTransfer,
        *,
        download_dir: Path | None = None,
        dest_base_url: str | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        public_only: bool = False,
        show_progress: bool = True,
    ) -> None:
        self.api: ApiClient = api
        self.tenant_cname: str = tenant_cname
        self.transfer: BlobTransfer = transfer
        self.tenant_folder: str = tenant_cname.replace('.', '_')
        self.download_dir: Path = download_dir if download_dir is not None else Path('downloads')
        self.dest_base_url: str | None = dest_base_url.rstrip('/') if dest_base_url else None
        self.batch_size: int = batch_size
        self.public_only: bool = public_only
        self.show_progress: bool = show_progress
        self.context: RunContext = RunContext(tenant_cname)
        self.files_lookup: WorkRecordBuilder = WorkRecordBuilder(api, self.context)
        self.files_transferred: int = 0
        self.bytes_transferred: int = 0
        self.files_skipped: int = 0
        self.failed_files: list[dict[str, str]] = []

    def destination_label(self) -> str:
        if self.dest_base_url:
            return f'{self.dest_base_url}/{self.tenant_folder}/'
        return str(self.download_dir / self.tenant_folder)

    def run(self) -> None:
        session = TenantSession(self.api, self.tenant_cname)
        try:
            session.activate()
            fq: str = FILE_SET_FILTER
            if self.public_only:
                fq = f'{fq} AND visibility_ssi:"open"'
            walker = PaginatedIndexWalker(self.api, self.context, 'file_sets')
            progress = tqdm(desc='Transferring files', unit='file', disable=not self.show_progress)
            try:
                for file_set_id in walker.scan(fq, self.batch_size):
                    self.transfer_file_set(file_set_id)
                    progress.update(1)
            except (httpx.HTTPError, ValueError) as exc:
                log.error(f'file-set scan failed: {exc}')
                self.context.record_failure('index', 'file_sets', '', str(exc))
            finally:
                progress.close()
                self.context.finish_scope('file_sets')
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

    def transfer_file_set(self, file_set_id: str) -> None:
        try:
            file_set: AttributeBag = self.api.fetch_object('file_sets', file_set_id)
        except (ObjectNotFoundError, httpx.HTTPError, ValueError) as exc:
            self.record_failed(file_set_id, '', '', str(exc))
            return
        original_file: AttributeBag | None = self.files_lookup.original_file_for(file_set)
        if original_file is None or original_file.first('id') is None:
            log.debug(f'file set ``{file_set_id}`` has no original file; skipping')
            self.files_skipped += 1
            return
        file_name: str = transfer_name(file_set, original_file)
        source_ref: str = self.api.urls.file_content_url(str(original_file.first('id')))
        try:
            if self.dest_base_url:
                moved: int = self.transfer.copy(source_ref, f'{self.dest_base_url}/{self.tenant_folder}/{file_name}')
            else:
                moved = self.transfer.download(source_ref, self.download_dir / self.tenant_folder / file_name)
        except (httpx.HTTPError, OSError) as exc:
            self.record_failed(file_set_id, file_name, source_ref, str(exc))
            return
        self.files_transferred += 1
        self.bytes_transferred += moved
        log.info(f'transferred ``{file_name}`` ({humanize.naturalsize(moved)})')

    def record_failed(self, file_set_id: str, file_name: str, source_ref: str, error: str) -> None:
        log.warning(f'failed: ``{file_name or file_set_id}`` - {error}')
        self.failed_files.append(
            {'file_set_id': file_set_id, 'file_name': file_name, 'source_ref': source_ref, 'error': error}
        )
        self.context.record_failure('transfer', 'file_sets', file_set_id, error)

    def summary_lines(self) -> list[str]:
        lines: list[str] = ['=' * 60, 'Transfer Complete!', '=' * 60]
        lines.append(f'Files transferred: {humanize.intcomma(self.files_transferred)}')
        lines.append(f'Bytes transferred: {humanize.naturalsize(self.bytes_transferred)}')
        lines.append(f'Skipped (no original file): {humanize.intcomma(self.files_skipped)}')
        lines.append(f'Failed transfers: {humanize.intcomma(len(self.failed_files))}')
        lines.append(f'Location: {self.destination_label()}')
        if self.failed_files:
            lines.append('')
            lines.append('Failed files:')
            for info in self.failed_files:
                lines.append(f'  - {info["file_name"] or "(unknown)"} ({info["file_set_id"]})')
                lines.append(f'    Source: {info["source_ref"] or "(unknown)"}')
                lines.append(f'    Error: {info["error"]}')
        other_failures: list[dict[str, str]] = [f for f in self.context.failures if f['stage'] != 'transfer']
        for failure in other_failures:
            lines.append(f'  - [{failure["stage"]}] {failure["scope"]} {failure["id"]}: {failure["error"]}')
        for degradation in self.context.degradations:
            lines.append(f'  - [{degradation["field"]}] {degradation["id"]}: {degradation["error"]}')
        lines.append('=' * 60)
        return lines


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Takes exactly one positional argument, the tenant cname; anything missing or extra exits 1 with usage.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = UsageExitParser(description="Download (or copy) the original files of a tenant's file-sets.")
        parser.add_argument('tenant_cname', help='Tenant cname like dashboard.example.edu')
        parser.add_argument('--download-dir', default='downloads', help='Local download root (default: ./downloads).')
        parser.add_argument(
            '--dest-base-url', default=None, help='Optional. Copy files here with HTTP PUT instead of downloading.'
        )
        parser.add_argument('--public-only', action='store_true', help='Only transfer publicly visible files.')
        parser.add_argument(
            '--batch-size',
            type=positive_int,
            default=DEFAULT_BATCH_SIZE,
            metavar='INTEGER',
            help=f'Search-index page size (default: {DEFAULT_BATCH_SIZE}).',
        )
        parser.add_argument('--no-progress', action='store_true', help='Hide the progress bar.')
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """
    Transfers every original file of the tenant, then prints the transfer summary.
    Called by: dundermain
    """
    args: argparse.Namespace = CLI.parse_args(argv)
    tenant_cname: str = args.tenant_cname.strip()
    download_dir: Path = Path(args.download_dir).expanduser().resolve()

    print(f'Starting file transfer for tenant cname: {tenant_cname}')
    dest_timeout: httpx.Timeout = httpx.Timeout(connect=30.0, read=120.0, write=120.0, pool=30.0)
    with build_http_client('tenant-file-transfer/1.0') as client, httpx.Client(timeout=dest_timeout) as dest_client:
        api = ApiClient(client, UrlBuilder(BASE))
        job = TenantFileTransfer(
            api,
            tenant_cname,
            BlobTransfer(client, dest_client=dest_client),
            download_dir=download_dir,
            dest_base_url=args.dest_base_url,
            batch_size=args.batch_size,
            public_only=args.public_only,
            show_progress=not args.no_progress,
        )
        job.run()

    print('\n'.join(job.summary_lines()))
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
