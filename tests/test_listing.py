import re
from io import BytesIO

from zipserve import ListingEntry, list_entries, render_listing

TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")


def render(url_path, entries, **kwargs):
	out = BytesIO()
	render_listing(out, url_path, entries, **kwargs)
	return out.getvalue().decode("utf-8")


def test_list_entries(tree):
	entries = list_entries(str(tree), "/")

	assert [e.name for e in entries] == ["asdf", "mydir", "qwer"]
	asdf, mydir, _ = entries
	assert asdf.path == "/asdf"
	assert asdf.size == len("this is the content of asdf")
	assert not asdf.is_dir
	assert TIMESTAMP.match(asdf.mod_time)
	assert mydir.is_dir
	assert mydir.size == 0


def test_list_entries_nested_paths(tree):
	entries = list_entries(str(tree / "mydir"), "/mydir")
	assert [e.path for e in entries] == ["/mydir/deeper", "/mydir/inner.txt"]


def test_list_entries_dangling_symlink(tmp_path):
	(tmp_path / "gone").symlink_to(tmp_path / "missing")
	entries = list_entries(str(tmp_path), "/")
	assert [e.name for e in entries] == ["gone"]
	assert not entries[0].is_dir


def test_render_listing_links_every_entry(tree):
	page = render("/", list_entries(str(tree), "/"))

	assert "<title>Index of /</title>" in page
	for name in ("asdf", "qwer", "mydir"):
		assert f'<a href="/{name}">{name}</a>' in page


def test_render_listing_directories_have_no_size_or_time():
	entries = [
		ListingEntry("sub", "/x/sub", 0, "2020-01-02 03:04:05", True),
		ListingEntry("f", "/x/f", 42, "2021-06-07 08:09:10", False),
	]
	page = render("/x", entries)

	assert "2020-01-02 03:04:05" not in page
	assert "2021-06-07 08:09:10" in page
	assert "<td>42</td>" in page


def test_render_listing_selectable_form():
	entries = [ListingEntry("f", "/x/f", 1, "2021-06-07 08:09:10", False)]
	page = render("/x", entries)

	assert '<form method="post" action="/x">' in page
	assert '<input type="checkbox" name="files" value="f">' in page
	assert 'value="Download zip"' in page


def test_render_listing_plain_variant():
	entries = [ListingEntry("f", "/x/f", 1, "2021-06-07 08:09:10", False)]
	page = render("/x", entries, selectable=False)

	assert "<form" not in page
	assert "checkbox" not in page
	assert '<a href="/x/f">f</a>' in page


def test_render_listing_escapes_names():
	entries = [ListingEntry('<b>"x" & y', '/<b>"x" & y', 1, "2021-06-07 08:09:10", False)]
	page = render("/", entries)

	assert "<b>" not in page
	assert "&lt;b&gt;&quot;x&quot; &amp; y" in page
	assert 'href="/%3Cb%3E%22x%22%20%26%20y"' in page


def test_render_listing_empty_directory():
	page = render("/empty", [])
	assert "Index of /empty" in page
	assert "<a href" not in page
