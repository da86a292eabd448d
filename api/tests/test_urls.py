from kindsync.core.urls import bookmark_url_key


def test_same_page_saved_twice_shares_a_key() -> None:
    first = bookmark_url_key("HTTPS://www.Example.com:443/posts/hello/?utm_source=feed&b=2&fbclid=x#comments")
    second = bookmark_url_key("http://example.com/posts/hello?b=2")

    assert first == second == "example.com/posts/hello?b=2"


def test_root_path_and_custom_port_are_kept() -> None:
    assert bookmark_url_key("http://example.com") == "example.com/"
    assert bookmark_url_key("http://example.com:8080/x") == "example.com:8080/x"


def test_query_order_is_significant() -> None:
    assert bookmark_url_key("https://example.com/?a=1&b=2") != bookmark_url_key("https://example.com/?b=2&a=1")
