import pytest
from openpyxl import Workbook

from votemap.jobs.university_import import (
    build_school_record,
    build_school_records,
    format_school_code,
    import_universities,
    read_register_rows,
)

HEADERS = ["학교구분", "학교코드", "학교명", "본분교", "학제", "지역", "주소", "학교상태"]


def _row(**overrides):
    row = {
        "학교구분": "대학",
        "학교코드": "51",
        "학교명": "한국대학교",
        "본분교": "본교",
        "학제": "대학(4년제)",
        "지역": "서울",
        "주소": "서울특별시 강남구 테헤란로 1",
        "학교상태": "기존",
    }
    row.update(overrides)
    return row


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("51", "0000051"),
        (51, "0000051"),
        (51.0, "0000051"),
        ("1234567", "1234567"),
        ("A123", "A123"),
        (None, ""),
    ],
)
def test_format_school_code_zero_pads_numeric_codes(raw, expected):  # noqa: ANN001
    assert format_school_code(raw) == expected


def test_build_school_record_maps_register_columns():
    record = build_school_record(_row())

    assert record == {
        "source": "local_xls",
        "school_code": "0000051",
        "school_name": "한국대학교",
        "school_level": "university",
        "campus_type": "본교",
        "parent_school_id": None,
        "sido_name": "서울",
        "sido_code": "11",
        "sigungu_name": "강남구",
        "sigungu_code": "11230",
        "address": "서울특별시 강남구 테헤란로 1",
        "is_active": True,
    }


def test_build_school_record_graduate_and_closed():
    record = build_school_record(_row(학제="대학원대학", 학교상태="폐교"))

    assert record["school_level"] == "graduate"
    assert record["is_active"] is False


@pytest.mark.parametrize("override", [{"학교구분": "전문대학"}, {"학교코드": ""}, {"학교명": " "}])
def test_build_school_record_skips_non_university_or_incomplete(override):  # noqa: ANN001
    assert build_school_record(_row(**override)) is None


def test_build_school_records_dedupes_by_code_last_wins():
    records = build_school_records([_row(학교명="옛이름"), _row(학교명="새이름"), _row(학교구분="대학원")])

    assert [record["school_name"] for record in records] == ["새이름"]


def test_read_register_rows_from_xlsx(tmp_path):
    wb = Workbook()
    ws = wb.active
    ws.append(HEADERS)
    ws.append(list(_row(학교코드=51).values()))
    path = tmp_path / "register.xlsx"
    wb.save(path)

    rows = read_register_rows(path)

    assert len(rows) == 1
    assert rows[0]["학교명"] == "한국대학교"
    assert format_school_code(rows[0]["학교코드"]) == "0000051"


def test_read_register_rows_from_csv(tmp_path):
    path = tmp_path / "register.csv"
    lines = [",".join(HEADERS), ",".join(_row().values())]
    path.write_text("\n".join(lines), encoding="utf-8-sig")

    rows = read_register_rows(path)

    assert rows[0]["학교구분"] == "대학"


def test_import_universities_upserts_and_links_campuses(repo, tmp_path):
    path = tmp_path / "register.csv"
    rows = [
        _row(),
        _row(학교코드="52", 본분교="분교", 지역="충남", 주소="충청남도 천안시 동남구 단대로 119"),
        _row(학교코드="53", 학교명="다른대학교"),
    ]
    path.write_text(
        "\n".join([",".join(HEADERS), *(",".join(row.values()) for row in rows)]),
        encoding="utf-8-sig",
    )

    result = import_universities(repo, path)

    assert result.imported == 3
    assert result.parent_links_updated == 1
    main = repo.find_school_by_key("local_xls", "0000051")
    branch = repo.find_school_by_key("local_xls", "0000052")
    assert branch["parent_school_id"] == main["id"]
    assert branch["sido_code"] == "34"

    rerun = import_universities(repo, path)
    assert rerun.parent_links_updated == 0
    assert len(repo.schools) == 3


def test_import_universities_rejects_file_without_universities(repo, tmp_path):
    path = tmp_path / "register.csv"
    path.write_text(",".join(HEADERS) + "\n" + ",".join(_row(학교구분="전문대학").values()), encoding="utf-8-sig")

    with pytest.raises(ValueError):
        import_universities(repo, path)
