from app.services import domains as domain_util


def test_get_type():
    assert domain_util.get_type("example.com") == domain_util.STANDARD
    assert domain_util.get_type("*.example.com") == domain_util.WILDCARD
    assert domain_util.get_type("192.168.1.10") == domain_util.IPV4
    assert domain_util.get_type("2001:db8::1") == domain_util.IPV6
    assert domain_util.get_type("localhost") == domain_util.INVALID
    assert domain_util.get_type("bad..example.com") == domain_util.INVALID


def test_get_type_accepts_unicode_names():
    assert domain_util.get_type("例子.中国") == domain_util.STANDARD
    assert domain_util.get_type("*.bücher.de") == domain_util.WILDCARD


def test_get_root_domain():
    assert domain_util.get_root_domain("a.b.example.com") == "example.com"
    assert domain_util.get_root_domain("*.www.example.com") == "example.com"
    assert domain_util.get_root_domain("shop.example.com.cn") == "example.com.cn"
    assert domain_util.get_root_domain("example.co.uk") == "example.co.uk"
    assert domain_util.get_root_domain("10.0.0.1") == "10.0.0.1"


def test_split_normalises_and_drops_blanks():
    assert domain_util.split(" Example.com, ,WWW.example.com ,") == ["example.com", "www.example.com"]


def test_add_gift_domain_puts_root_after_wildcard():
    assert domain_util.add_gift_domain("*.example.com,www.test.com") == "*.example.com,example.com,www.test.com"
    # already present: nothing added
    assert domain_util.add_gift_domain("example.com,*.example.com") == "example.com,*.example.com"


def test_remove_gift_domain():
    assert domain_util.remove_gift_domain("*.example.com,example.com,test.com") == "*.example.com,test.com"


def test_sans_count_with_and_without_gift():
    names = "*.example.com,example.com,www.example.com"
    assert domain_util.get_sans_from_domains(names) == {"standard_count": 2, "wildcard_count": 1}
    assert domain_util.get_sans_from_domains(names, gift_root_domain=True) == {
        "standard_count": 1,
        "wildcard_count": 1,
    }


def test_sans_count_ip_is_standard():
    assert domain_util.get_sans_from_domains("example.com,1.2.3.4") == {"standard_count": 2, "wildcard_count": 0}


def test_unicode_conversion():
    ascii_name = domain_util.to_ascii("*.例子.中国")
    assert ascii_name.startswith("*.xn--")
    assert domain_util.convert_to_unicode_domains(ascii_name + ",example.com") == "*.例子.中国,example.com"
