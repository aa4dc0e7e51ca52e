"""
Simple HTTP file server.

Serves a directory tree: directories as an HTML listing, files verbatim, and
a zip of the checked entries when the listing form is posted back.
"""
import argparse
import html
import http.server
import logging
import os
import posixpath
import socket
import stat
import sys
import time
import urllib.parse
import zipfile
from functools import partial
from io import BytesIO
from typing import NamedTuple

from dotenv import find_dotenv, load_dotenv

__version__ = "0.1.0"

logger = logging.getLogger("zipserve")

DEFAULT_ADDRESS = "localhost:9876"
ENCODING = "utf-8"
TRUTHY = ("1", "true", "yes", "on")


class OutsideRootError(ValueError):
	"""A path resolved to somewhere outside the directory it was joined onto."""


class ListingEntry(NamedTuple):
	name: str
	path: str
	size: int
	mod_time: str
	is_dir: bool


# ---------- paths ----------
def clean_url_path(raw):
	"""
	Turn a request target into a clean URL path.
	Query and fragment are dropped, escapes decoded, "." and ".." collapsed.
	The result always starts with "/" and has no trailing slash ("/" aside).
	"""
	path = raw.split("?", 1)[0].split("#", 1)[0]
	path = urllib.parse.unquote(path, errors="surrogateescape")
	path = posixpath.normpath("/" + path)
	# posix keeps a leading "//", we don't
	return "/" + path.lstrip("/")


def resolve_path(root, url_path):
	"""Join url_path onto root, refusing anything that lands outside root."""
	root = os.path.abspath(root)
	parts = [p for p in url_path.split("/") if p]
	target = os.path.abspath(os.path.join(root, *parts))
	try:
		inside = os.path.commonpath([root, target]) == root
	except ValueError:	# different drives on windows
		inside = False
	if not inside:
		raise OutsideRootError(f"{url_path}: path escapes the served directory")
	return target


# ---------- listing ----------
LISTING_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
	<meta charset="utf-8">
	<meta name="viewport" content="width=device-width, initial-scale=1.0">
	<link rel="icon" href="data:,">
	<title>Index of {path}</title>
	<style>
		* {{ font-family: monospace; }}
		body {{ display: flex; flex-direction: column; align-items: center; }}
		th {{ text-align: left; }}
		th:not(:first-child):before {{ content: ''; display: block; min-width: 75px; }}
		table {{ margin-bottom: 16px; }}
	</style>
</head>
<body>
	<h1>Index of {path}</h1>
{body}
</body>
</html>
"""

FORM_TEMPLATE = """	<form method="post" action="{action}">
{table}
		<input type="submit" value="Download zip">
	</form>"""

TABLE_TEMPLATE = """	<table>
		<tr>
			{select_header}<th>Name</th>
			<th>Size</th>
			<th>Last modified</th>
		</tr>
{rows}
	</table>"""

ROW_TEMPLATE = """		<tr>
			{select}<td><a href="{href}">{name}</a></td>
			<td>{size}</td>
			<td>{mod_time}</td>
		</tr>"""

CHECKBOX_TEMPLATE = '<td><input type="checkbox" name="files" value="{value}"></td>\n\t\t\t'


def format_mtime(ts):
	return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


def list_entries(directory, url_path):
	"""Read directory into ListingEntry rows, sorted by name."""
	entries = []
	with os.scandir(directory) as it:
		for entry in sorted(it, key=lambda e: e.name):
			try:
				st = entry.stat()
			except OSError:
				# dangling symlink, describe the link itself
				st = entry.stat(follow_symlinks=False)
			is_dir = stat.S_ISDIR(st.st_mode)
			entries.append(ListingEntry(
				name=entry.name,
				path=posixpath.join(url_path, entry.name),
				size=0 if is_dir else st.st_size,
				mod_time=format_mtime(st.st_mtime),
				is_dir=is_dir,
			))
	return entries


def render_listing(out, url_path, entries, selectable=True):
	"""Write the "Index of" page for url_path to the binary stream out."""
	rows = []
	for entry in entries:
		select = ""
		if selectable:
			select = CHECKBOX_TEMPLATE.format(value=html.escape(entry.name))
		rows.append(ROW_TEMPLATE.format(
			select=select,
			href=html.escape(urllib.parse.quote(entry.path, errors="surrogateescape")),
			name=html.escape(entry.name),
			size="" if entry.is_dir else entry.size,
			mod_time="" if entry.is_dir else entry.mod_time,
		))

	table = TABLE_TEMPLATE.format(
		select_header="<th></th>\n\t\t\t" if selectable else "",
		rows="\n".join(rows),
	)
	if selectable:
		action = html.escape(urllib.parse.quote(url_path, errors="surrogateescape"))
		body = FORM_TEMPLATE.format(action=action, table=table)
	else:
		body = table

	page = LISTING_TEMPLATE.format(path=html.escape(url_path), body=body)
	out.write(page.encode(ENCODING, "surrogateescape"))


# ---------- archive ----------
def archive_name(url_path):
	"""Name of the zip offered for url_path: its last segment, or "root"."""
	return posixpath.basename(clean_url_path(url_path)) or "root"


def content_disposition(filename):
	"""
	Content-Disposition value for a download named filename.
	Non-ASCII names get an ASCII fallback plus an RFC 6266 filename*.
	"""
	fallback = "".join(ch if 0x20 <= ord(ch) < 0x7F else "_" for ch in filename)
	quoted = fallback.replace("\\", "\\\\").replace('"', '\\"')
	value = f'attachment; filename="{quoted}"'
	if fallback != filename:
		value += "; filename*=UTF-8''" + urllib.parse.quote(filename, safe="",
			errors="surrogateescape")
	return value


def _add_to_archive(zf, base, path):
	if os.path.isdir(path):
		with os.scandir(path) as it:
			children = sorted(entry.name for entry in it)
		for name in children:
			_add_to_archive(zf, base, os.path.join(path, name))
		return

	arcname = os.path.relpath(path, base).replace(os.sep, "/")
	zf.write(path, arcname)


def selected_targets(base, names):
	"""Resolve names under base, dropping repeats and anything inside another pick."""
	resolved = list(dict.fromkeys(resolve_path(base, name) for name in names))
	return [
		target for target in resolved
		if not any(
			other != target and os.path.commonpath([other, target]) == other
			for other in resolved
		)
	]


def write_archive(fileobj, directory, names=()):
	"""
	Write a zip of directory to fileobj.

	With no names the whole tree goes in, otherwise only the named top-level
	entries (directories recursively). Members are stored relative to
	directory. Any error aborts the walk and propagates with the central
	directory unwritten; behind an ArchiveStream that leaves the client a
	truncated archive.
	"""
	st = os.stat(directory)
	if not stat.S_ISDIR(st.st_mode):
		raise NotADirectoryError(f"{directory}: not a directory")

	base = os.path.abspath(directory)
	if names:
		targets = selected_targets(base, names)
	else:
		targets = [base]

	zf = zipfile.ZipFile(fileobj, "w", zipfile.ZIP_DEFLATED, strict_timestamps=False)
	for target in targets:
		_add_to_archive(zf, base, target)
	zf.close()


class ArchiveStream:
	"""
	Write-only file object between zipfile and the HTTP response.
	The 200 and its headers go out with the first chunk, so a failure before
	that can still be answered with a proper error status.
	"""

	def __init__(self, handler, filename):
		self.handler = handler
		self.filename = filename
		self.started = False
		self.aborted = False

	def write(self, data):
		if self.aborted:
			return len(data)
		if not self.started:
			self.started = True
			self.handler.send_response(200)
			self.handler.send_header("Content-Type", "application/zip")
			self.handler.send_header("Content-Disposition",
				content_disposition(self.filename))
			self.handler.send_header("Connection", "close")
			self.handler.end_headers()
		self.handler.wfile.write(data)
		return len(data)

	def flush(self):
		if self.started and not self.aborted:
			self.handler.wfile.flush()

	def abort(self):
		# ZipFile.__del__ would otherwise append a central directory
		self.aborted = True


# ---------- handler ----------
class FileServerHandler(http.server.SimpleHTTPRequestHandler):
	server_version = "zipserve/" + __version__

	def __init__(self, *args, quiet=False, allow_zip=True, **kwargs):
		self.quiet = quiet
		self.allow_zip = allow_zip
		super().__init__(*args, **kwargs)


	def __getattr__(self, name):
		# every verb without its own do_* handler gets a 405
		if name.startswith("do_"):
			return self.do_method_not_allowed
		raise AttributeError(name)


	def parse_request(self):
		ok = super().parse_request()
		if ok and not self.quiet:
			logger.info("[%s] %s", self.command, clean_url_path(self.path))
		return ok


	def end_headers(self):
		self.send_header("Cache-Control", "no-store")
		super().end_headers()


	def log_message(self, format, *args):
		logger.debug("%s - %s", self.address_string(), format % args)


	def log_error(self, format, *args):
		logger.error("%s - %s", self.address_string(), format % args)


	def send_text(self, code, text, headers=None):
		body = (text + "\n").encode(ENCODING, "replace")
		self.send_response(code)
		self.send_header("Content-Type", "text/plain; charset=utf-8")
		self.send_header("X-Content-Type-Options", "nosniff")
		self.send_header("Content-Length", str(len(body)))
		for key, value in (headers or {}).items():
			self.send_header(key, value)
		self.end_headers()
		self.wfile.write(body)


	def allowed_methods(self):
		return "GET, POST" if self.allow_zip else "GET"


	def do_method_not_allowed(self):
		self.send_text(405, "Method not allowed",
			headers={"Allow": self.allowed_methods()})


	do_HEAD = do_method_not_allowed


	def do_GET(self):
		f = self.send_head()
		if f:
			try:
				self.copyfile(f, self.wfile)
			finally:
				f.close()


	def send_head(self):
		"""Send headers for a file or a listing and return the body to copy."""
		url_path = clean_url_path(self.path)
		try:
			path = resolve_path(self.directory, url_path)
			if os.path.isdir(path):
				return self.list_directory(path, url_path)
			f = open(path, "rb")
		except (OSError, ValueError) as e:
			logger.error("Error: %s", e)
			self.send_text(404, "File not found")
			return None

		try:
			fs = os.fstat(f.fileno())
			self.send_response(200)
			self.send_header("Content-Type", self.guess_type(path))
			self.send_header("Content-Length", str(fs.st_size))
			self.send_header("Last-Modified", self.date_time_string(fs.st_mtime))
			self.end_headers()
		except Exception:
			f.close()
			raise
		return f


	def list_directory(self, path, url_path):
		"""Render the listing into memory and send its headers."""
		f = BytesIO()
		render_listing(f, url_path, list_entries(path, url_path),
			selectable=self.allow_zip)
		length = f.tell()
		f.seek(0)

		self.send_response(200)
		self.send_header("Content-Type", "text/html; charset=utf-8")
		self.send_header("Content-Length", str(length))
		self.end_headers()
		return f


	def read_form(self):
		"""Form fields from an urlencoded body, then from the query string."""
		length = int(self.headers.get("Content-Length") or 0)
		raw = self.rfile.read(length) if length > 0 else b""

		fields = {}
		if self.headers.get_content_type() == "application/x-www-form-urlencoded":
			fields = urllib.parse.parse_qs(raw.decode("ascii"),
				keep_blank_values=True, encoding=ENCODING, errors="strict")

		query = self.path.split("#", 1)[0].partition("?")[2]
		for key, values in urllib.parse.parse_qs(query, keep_blank_values=True).items():
			fields.setdefault(key, []).extend(values)
		return fields


	def do_POST(self):
		if not self.allow_zip:
			return self.do_method_not_allowed()

		url_path = clean_url_path(self.path)
		stream = ArchiveStream(self, archive_name(url_path))
		try:
			names = self.read_form().get("files", [])
			directory = resolve_path(self.directory, url_path)
			write_archive(stream, directory, names)
		except (OSError, ValueError) as e:
			stream.abort()
			logger.error("Error: %s", e)
			if stream.started:
				self.close_connection = True
			else:
				self.send_text(500, f"Error: {e}")


# ---------- server ----------
class FileServer(http.server.ThreadingHTTPServer):
	"""ThreadingHTTPServer that picks IPv4 or IPv6 from the host it binds."""

	def __init__(self, server_address, handler_class):
		host, port = server_address[:2]
		infos = socket.getaddrinfo(host or None, port,
			type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
		self.address_family = infos[0][0]
		super().__init__(server_address, handler_class)


# ---------- CLI ----------
def env_flag(name):
	return os.getenv(name, "").strip().lower() in TRUTHY


def parse_address(value):
	"""Split "host:port" into a (host, port) pair for argparse."""
	host, sep, port = value.rpartition(":")
	if not sep:
		raise argparse.ArgumentTypeError(f"invalid address {value!r}, expected host:port")
	try:
		port = int(port)
	except ValueError:
		raise argparse.ArgumentTypeError(f"invalid port in {value!r}") from None
	if not 0 <= port <= 65535:
		raise argparse.ArgumentTypeError(f"port out of range in {value!r}")
	return host.strip("[]"), port


def parse_args(argv=None):
	p = argparse.ArgumentParser(
		prog="zipserve",
		description="Serve a directory over HTTP, with zip download of selected entries.",
	)
	p.add_argument("dir", nargs="?", default=os.getenv("SERVE_DIR", "."),
		help="Directory to serve (default: current directory).")
	p.add_argument("-a", "--addr", type=parse_address,
		default=os.getenv("SERVE_ADDR", DEFAULT_ADDRESS),
		help=f"http address (default: {DEFAULT_ADDRESS}).")
	p.add_argument("-q", "--quiet", action="store_true",
		default=env_flag("SERVE_QUIET"),
		help="use quiet mode - don't display logs")
	p.add_argument("--no-zip", action="store_true",
		default=env_flag("SERVE_NO_ZIP"),
		help="plain listings only, no zip download")
	return p.parse_args(argv)


def main(argv=None) -> int:
	load_dotenv(find_dotenv(usecwd=True))
	args = parse_args(argv)
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(message)s",
		datefmt="%Y/%m/%d %H:%M:%S",
	)

	root = os.path.abspath(args.dir)
	if not os.path.isdir(root):
		logger.warning("Warning: %s is not a directory, every request will fail", root)

	handler = partial(FileServerHandler, directory=root, quiet=args.quiet,
		allow_zip=not args.no_zip)
	host, port = args.addr
	try:
		httpd = FileServer((host, port), handler)
	except OSError as e:
		print(f"Error: {e}", file=sys.stderr)
		return 1

	with httpd:
		logger.info("Serving %s on http://%s:%d/", root, host or "0.0.0.0",
			httpd.server_address[1])
		try:
			httpd.serve_forever()
		except KeyboardInterrupt:
			print("\nServer stopped.")
	return 0


if __name__ == "__main__":
	sys.exit(main())
