from pipelines.parsers import is_markdown, parse_content, parse_html, parse_markdown

PAGE = """
<html>
  <head><title>Docs</title><script>var x = 1;</script></head>
  <body>
    <nav class="sidebar"><a href="/nav-only">Navigation link</a></nav>
    <main>
      <h1>Getting Started</h1>
      <p>Install with <code>pip</code> first.</p>
      <pre><code class="language-python">import docscout
print(docscout)</code></pre>
      <ul>
        <li>First step</li>
        <li>Second step
          <ul><li>Nested step</li></ul>
        </li>
      </ul>
      <table>
        <tr><th>Option</th><th>Default</th></tr>
        <tr><td>depth</td><td>2</td></tr>
      </table>
      <h2>Next</h2>
      <p>See the <a href="/guide#usage">guide</a> or <a href="https://other.example.org/">elsewhere</a>.</p>
    </main>
    <footer>Copyright</footer>
  </body>
</html>
"""


def test_html_main_content_is_structured():
    page = parse_html("https://docs.example.com/start", PAGE)

    assert page.text.startswith("# Getting Started")
    assert "Install with `pip` first." in page.text
    assert "```python\nimport docscout\nprint(docscout)\n```" in page.text
    assert "- First step\n- Second step\n  - Nested step" in page.text
    assert "| Option | Default |\n| --- | --- |\n| depth | 2 |" in page.text
    assert "## Next" in page.text


def test_html_chrome_is_dropped():
    page = parse_html("https://docs.example.com/start", PAGE)

    assert "Navigation link" not in page.text
    assert "Copyright" not in page.text
    assert "var x" not in page.text


def test_html_headings_and_links():
    page = parse_html("https://docs.example.com/start", PAGE)

    assert page.headings == ["Getting Started", "Next"]
    assert page.links == [
        "https://docs.example.com/nav-only",
        "https://docs.example.com/guide",
        "https://other.example.org/",
    ]


def test_html_heading_cap():
    html = "<body>" + "".join(f"<h2>Section {i}</h2>" for i in range(30)) + "</body>"
    assert len(parse_html("https://a.example.com/", html, max_headings=5).headings) == 5


def test_html_without_main_uses_body():
    page = parse_html("https://a.example.com/", "<body><div><p>Plain body text</p></div></body>")
    assert page.text == "Plain body text"


def test_markdown_is_normalized():
    content = "# Title\n\nSome *emphasis* and a [link](https://x.example.com/).\n\n```python\nprint(1)\n```\n\n## Usage\n"
    page = parse_markdown(content)

    assert page.headings == ["Title", "Usage"]
    assert "Some emphasis and a link." in page.text
    assert "```python\nprint(1)\n```" in page.text
    assert page.links == []


def test_markdown_headings_skip_fences():
    content = "# Real\n\n```bash\n# not a heading\n```\n"
    assert parse_markdown(content).headings == ["Real"]


def test_content_dispatch():
    assert is_markdown("https://a.example.com/README.md", "text/plain")
    assert is_markdown("https://a.example.com/x", "text/markdown; charset=utf-8")
    assert not is_markdown("https://a.example.com/x", "text/html")

    assert parse_content("https://a.example.com/x", "  raw text  ", "text/plain").text == "raw text"
    html_page = parse_content("https://a.example.com/x", "<p>hi</p>", "text/html; charset=utf-8")
    assert html_page.text == "hi"
