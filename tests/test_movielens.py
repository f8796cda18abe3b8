import numpy as np
import pytest

from movierec.data.download import find_movielens_dir
from movierec.data.movielens import N_GENRES, extract_year, parse_items, parse_ratings, read_movielens_dir
from movierec.data.store import RatingStore


def test_parse_items_skips_malformed_lines(items_text):
    items = parse_items(items_text)
    assert sorted(items) == [1, 2, 5, 7]


def test_parse_items_strips_year_and_reads_genres(items_text):
    toy = parse_items(items_text)[1]
    assert toy.title == "Toy Story"
    assert toy.year == 1995
    assert toy.genres == ["Animation", "Children's", "Comedy"]
    assert toy.genre_flags.dtype == np.float32
    assert toy.genre_flags.shape == (19,)


@pytest.mark.parametrize(
    "title, year",
    [("Heat (1995)", 1995), ("Metropolis (1826)", None), ("No Year", None), ("Odd (2101)", None)],
)
def test_extract_year(title, year):
    assert extract_year(title) == year


def test_parse_ratings_skips_bad_rows(items_text, ratings_text):
    parsed = parse_ratings(ratings_text, parse_items(items_text).keys())
    assert len(parsed.ratings) == 6
    assert list(parsed.user_encoder.classes_) == [22, 196, 244, 300]
    # every known item is encoded, rated or not
    assert list(parsed.item_encoder.classes_) == [1, 2, 5, 7]


def test_parse_ratings_rated_sets(items_text, ratings_text):
    parsed = parse_ratings(ratings_text, parse_items(items_text).keys())
    assert parsed.user_rated_items[0] == frozenset({0, 2})   # raw user 22: items 1 and 5
    assert parsed.user_rated_items[1] == frozenset({0, 1})   # raw user 196: items 1 and 2


def test_parse_ratings_empty_text(items_text):
    parsed = parse_ratings("", parse_items(items_text).keys())
    assert len(parsed.ratings) == 0
    assert parsed.user_rated_items == {}


def test_store_from_text(items_text, ratings_text):
    store = RatingStore.from_movielens_text(items_text, ratings_text)
    assert store.num_users == 4
    assert store.num_items == 4
    assert store.stats.rating_count == 6
    assert store.stats.mean_rating == pytest.approx(20 / 6)
    assert store.user_index(196) == 1
    assert store.item_index(7) == 3
    assert store.movies[3].title == "Twelve Monkeys"
    assert store.item_rating_count[3] == 0


def test_read_movielens_dir(tmp_path, items_text, ratings_text):
    (tmp_path / "u.item").write_text(items_text, encoding="latin-1")
    (tmp_path / "u.data").write_text(ratings_text, encoding="latin-1")
    store = RatingStore.from_directory(tmp_path)
    assert len(store) == 6


def test_read_movielens_dir_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_movielens_dir(tmp_path)


def test_find_movielens_dir_walks_nested_folders(tmp_path):
    nested = tmp_path / "versions" / "1" / "ml-100k"
    nested.mkdir(parents=True)
    (nested / "u.data").write_text("")
    assert find_movielens_dir(tmp_path) == nested

    with pytest.raises(FileNotFoundError):
        find_movielens_dir(tmp_path / "versions" / "2")


def test_parse_items_keeps_quotes_and_ignores_extra_fields():
    flags = ["0"] * N_GENRES
    flags[1] = "1"
    text = "\n".join([
        "|".join(["11", 'Dr. "Strangelove" (1964)', "", "", ""] + flags),
        "|".join(["12", "Heat (1995)", "", "", ""] + flags + ["trailing", "junk"]),
        "",
        "|".join(["13", "", "", "", ""] + flags),
    ])
    items = parse_items(text)
    assert sorted(items) == [11, 12, 13]
    assert items[11].title == 'Dr. "Strangelove"'
    assert items[11].year == 1964
    assert items[12].genres == ["Action"]
    assert items[13].title == "Movie 13"


def test_parse_ratings_skips_fractional_and_non_finite_values():
    text = "\n".join([
        "1\t1\t4\t0",
        "1.5\t1\t4\t0",
        "2\t1\tinf\t0",
        "3\t1\t5\t0\textra",
        " 4 \t1\t3\t0",
    ])
    parsed = parse_ratings(text, [1])
    assert list(parsed.user_encoder.classes_) == [1, 3, 4]
    assert parsed.ratings["rating"].tolist() == [4.0, 5.0, 3.0]
