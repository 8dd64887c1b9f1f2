from items import extract_item, extract_link
from records import FeedItem


def test_content_priority_prefers_encoded_content():
    item = extract_item({
        'content:encoded': '<p>full</p>',
        'content': '<p>partial</p>',
        'summary': 'summary',
        'description': 'description',
    })
    assert item.content == '<p>full</p>'


def test_content_falls_through_blank_fields():
    item = extract_item({'content:encoded': '   ', 'content': None, 'description': 'desc'})
    assert item.content == 'desc'


def test_author_priority_and_atom_author_object():
    assert extract_item({'creator': 'Ann', 'author': 'Bob'}).author == 'Ann'
    assert extract_item({'dc:creator': 'Cid', 'author': 'Bob'}).author == 'Cid'
    assert extract_item({'author': {'name': 'Dee'}}).author == 'Dee'
    assert extract_item({}).author is None


def test_date_prefers_iso_date():
    item = extract_item({'pubDate': 'Mon, 01 Jan 2024 00:00:00 GMT', 'isoDate': '2024-01-01T00:00:00.000Z'})
    assert item.date == '2024-01-01T00:00:00.000Z'


def test_link_shapes():
    assert extract_link('https://example.com/a') == 'https://example.com/a'
    assert extract_link(['https://example.com/b', 'https://example.com/c']) == 'https://example.com/b'
    assert extract_link({'href': ' https://example.com/d '}) == 'https://example.com/d'
    assert extract_link([]) == ''
    assert extract_link(42) == ''


def test_non_string_fields_are_ignored():
    item = extract_item({'title': 12, 'guid': {'#text': 'x'}, 'id': 'tag:1'})
    assert item.title == ''
    assert item.guid == ''
    assert item.id == 'tag:1'


def test_non_dict_item_is_empty():
    assert extract_item("nonsense") == FeedItem()
