import pytest

from pricetracker.errors import UnsupportedSiteError
from pricetracker.sites import Site, classify_url, parse_site


@pytest.mark.parametrize(
    "url, site, canonical",
    [
        ("https://shopee.co.id/product/111/222?sp_atk=x", Site.SHOPEE, "https://shopee.co.id/product/111/222"),
        ("http://www.tokopedia.com/tokokopi/kopi-gayo/", Site.TOKOPEDIA, "https://www.tokopedia.com/tokokopi/kopi-gayo"),
        ("https://www.blibli.com/p/kopi-gayo/ps--ABC-12345-00001#top", Site.BLIBLI,
         "https://www.blibli.com/p/kopi-gayo/ps--ABC-12345-00001"),
    ],
)
def test_classify_url(url, site, canonical):
    assert classify_url(url) == (site, canonical)


@pytest.mark.parametrize(
    "url",
    ["https://www.amazon.com/dp/B000", "ftp://shopee.co.id/product/1/2", "", "not a url"],
)
def test_classify_url_rejects_unsupported(url):
    with pytest.raises(UnsupportedSiteError):
        classify_url(url)


def test_parse_site_is_case_insensitive():
    assert parse_site(" tokopedia ") is Site.TOKOPEDIA
    with pytest.raises(UnsupportedSiteError):
        parse_site("Lazada")
