import pytest

from utils.matching import suggest_names


@pytest.mark.asyncio
async def test_suggest_exact():
    options = ["garchomp", "pikachu", "charizard"]
    matches = await suggest_names("garchomp", options)
    assert matches[0] == "garchomp"


@pytest.mark.asyncio
async def test_suggest_typo():
    options = ["garchomp", "pikachu", "charizard"]
    matches = await suggest_names("pikachuu", options)
    assert "pikachu" in matches


@pytest.mark.asyncio
async def test_prefix_hits_come_first():
    options = ["charmeleon", "charizard", "charmander", "chansey"]
    matches = await suggest_names("charm", options)
    assert matches[:2] == ["charmander", "charmeleon"]


@pytest.mark.asyncio
async def test_suggest_empty():
    assert await suggest_names("garchomp", []) == []
    assert await suggest_names("   ", ["pikachu"]) == []


@pytest.mark.asyncio
async def test_suggest_no_match():
    options = ["pikachu", "bulbasaur"]
    matches = await suggest_names("digimon", options, cutoff=0.9)
    assert matches == []
