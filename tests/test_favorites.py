from coffee_monitor.favorites import match_favorite, meets_preferences, parse_terms
from coffee_monitor.models import Favorite


def favorite(name="Ethiopia", terms=("ethiopia", "guji"), **kwargs):
    return Favorite(id=1, name=name, terms=terms, **kwargs)


def test_match_collects_every_matching_term(observe):
    match = match_favorite(observe("Ethiopia Guji Hambela 250g"), [favorite()])
    assert match is not None
    assert match.favorite.name == "Ethiopia"
    assert match.matched_terms == ("ethiopia", "guji")


def test_match_is_case_insensitive_substring(observe):
    assert match_favorite(observe("GUJI natural"), [favorite()]) is not None
    assert match_favorite(observe("Kenya Nyeri"), [favorite()]) is None


def test_organic_only(observe):
    fav = favorite(organic_only=True)
    assert not meets_preferences(fav, observe("Ethiopia 250g"))
    assert meets_preferences(fav, observe("Ethiopia 250g", organic=True))


def test_size_preference(observe):
    fav = favorite(size_preference="1kg")
    assert not meets_preferences(fav, observe("Ethiopia 250g"))
    assert meets_preferences(fav, observe("Ethiopia 1kg"))
    assert meets_preferences(fav, observe("Ethiopia"))
    assert meets_preferences(favorite(size_preference="both"), observe("Ethiopia 250g"))


def test_first_matching_favorite_decides(observe):
    strict = favorite(name="Strict", terms=("ethiopia",), organic_only=True)
    loose = Favorite(id=2, name="Loose", terms=("ethiopia",))
    assert match_favorite(observe("Ethiopia 250g"), [strict, loose]) is None
    match = match_favorite(observe("Ethiopia 250g"), [loose, strict])
    assert match.favorite.name == "Loose"


def test_parse_terms():
    assert parse_terms("ethiopia, guji,, ", "Ethiopia") == ["ethiopia", "guji"]
    assert parse_terms(None, " Kenya ") == ["Kenya"]
    assert parse_terms(" , ", "Kenya") == ["Kenya"]
