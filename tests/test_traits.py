import pytest

from traits import TRAITS, Trait, get_trait


def test_table_covers_every_trait():
    assert set(TRAITS) == set(Trait)


def test_trait_values():
    assert get_trait(Trait.TOUGH).hp == 120
    assert get_trait(Trait.MENTAL).hp == 80
    assert get_trait("MENTAL") is TRAITS[Trait.MENTAL]


def test_unknown_trait():
    with pytest.raises(ValueError):
        get_trait("SPEEDY")
