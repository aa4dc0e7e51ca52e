import http.client
import threading
from functools import partial

import pytest

import zipserve


@pytest.fixture
def tree(tmp_path):
	(tmp_path / "asdf").write_text("this is the content of asdf")
	(tmp_path / "qwer").write_text("this is the content of qwer")
	mydir = tmp_path / "mydir"
	mydir.mkdir()
	(mydir / "inner.txt").write_text("inner content")
	(mydir / "deeper").mkdir()
	(mydir / "deeper" / "leaf.bin").write_bytes(b"\x00\x01\x02")
	return tmp_path


@pytest.fixture
def make_server():
	"""Start a handler for a directory on an ephemeral port, return the port."""
	servers = []

	def start(root, **options):
		handler = partial(zipserve.FileServerHandler, directory=str(root), **options)
		httpd = zipserve.FileServer(("127.0.0.1", 0), handler)
		threading.Thread(target=httpd.serve_forever, daemon=True).start()
		servers.append(httpd)
		return httpd.server_address[1]

	yield start
	for httpd in servers:
		httpd.shutdown()
		httpd.server_close()


@pytest.fixture
def server(tree, make_server):
	return make_server(tree)


def fetch(port, method, target, body=None, headers=None):
	conn = http.client.HTTPConnection("127.0.0.1", port, timeout=10)
	try:
		conn.request(method, target, body=body, headers=headers or {})
		resp = conn.getresponse()
		return resp.status, resp.headers, resp.read()
	finally:
		conn.close()


def post_form(port, target, body=""):
	return fetch(port, "POST", target, body=body.encode("ascii"),
		headers={"Content-Type": "application/x-www-form-urlencoded"})
