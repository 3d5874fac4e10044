import io
import zipfile

import openpyxl
import pytest

from export_utils import (
    generate_file_name, deduplicate_statements, analyze_statements_for_export,
    create_zip_export, build_excel_workbook
)


@pytest.fixture
def company():
    return {'company_name': 'Acme Ltd.'}


class TestFileNames:
    def test_monthly(self, sample_statements, company, sample_bank):
        assert generate_file_name(sample_statements[0], company, sample_bank) == \
            "ACMELTD-EQUITYBANK-1234567890-KES-JAN.2024"

    def test_range_with_password(self, sample_statements, company, sample_bank):
        assert generate_file_name(sample_statements[1], company, sample_bank, include_password=True) == \
            "ACMELTD-EQUITYBANK-1234567890-KES-FEB-APR.2024-PW5678"

    def test_range_across_years(self, company, sample_bank):
        statement = {
            'statement_month': 11,
            'statement_year': 2023,
            'statement_type': 'range',
            'statement_extractions': {'statement_period': '01/11/2023 - 31/01/2024'},
        }
        assert generate_file_name(statement, company, sample_bank).endswith("-NOV.2023-JAN.2024")

    def test_range_without_period(self, company, sample_bank):
        statement = {'statement_month': 5, 'statement_year': 2024, 'statement_type': 'range'}
        assert generate_file_name(statement, company, sample_bank).endswith("-MAY.2024-RANGE")


class TestDeduplication:
    def test_range_months_share_files(self, sample_statements):
        unique = deduplicate_statements(sample_statements)
        assert [s['id'] for s in unique] == ['st-1', 'st-2']

    def test_analysis(self, sample_statements):
        analysis = analyze_statements_for_export(sample_statements)

        assert analysis["monthly_count"] == 1
        assert analysis["range_count"] == 2
        assert analysis["unique_files"] == 2
        assert analysis["duplicate_range_groups"] == [
            {"months": ["2/2024", "3/2024"], "period": "01/02/2024 - 30/04/2024"}
        ]


class TestZipExport:
    def test_files_and_error_notes(self, sample_statements, company, sample_bank):
        def fetch(path):
            if path.endswith('.xlsx'):
                raise Exception("403 Forbidden")
            return b'%PDF ' + path.encode()

        content, zip_name = create_zip_export(sample_statements, company, sample_bank, fetch=fetch)

        assert zip_name.startswith("AcmeLtd_EquityBank_statements_")
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            names = sorted(archive.namelist())
            assert names == [
                "ACMELTD-EQUITYBANK-1234567890-KES-FEB-APR.2024.pdf",
                "ACMELTD-EQUITYBANK-1234567890-KES-JAN.2024.pdf",
                "ERROR_ACMELTD-EQUITYBANK-1234567890-KES-FEB-APR.2024_Excel.txt",
            ]
            note = archive.read("ERROR_ACMELTD-EQUITYBANK-1234567890-KES-FEB-APR.2024_Excel.txt").decode()
            assert "403 Forbidden" in note
            assert "Original Path: statements/acme/q1.xlsx" in note

    def test_original_names(self, sample_statements, company, sample_bank):
        content, _ = create_zip_export(
            sample_statements[:1], company, sample_bank, {"rename_files": False}, fetch=lambda path: b'x'
        )
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            assert archive.namelist() == ["statement_st-1.pdf"]


class TestExcelWorkbook:
    def test_sheets_and_styling(self):
        content = build_excel_workbook({
            "A very long sheet name that exceeds the limit": [{"Name": "Acme", "Amount": 10}],
            "Empty": [],
        }, title="Export")

        workbook = openpyxl.load_workbook(io.BytesIO(content))
        assert workbook.sheetnames == ["A very long sheet name that exc", "Empty"]
        assert workbook.properties.title == "Export"

        sheet = workbook.worksheets[0]
        assert [c.value for c in sheet[1]] == ["Name", "Amount"]
        assert sheet["A1"].font.bold is True
        assert sheet.freeze_panes == "A2"
        assert workbook["Empty"]["A1"].value == "No data"

    def test_no_sheets(self):
        workbook = openpyxl.load_workbook(io.BytesIO(build_excel_workbook({}, title="Report")))
        assert workbook.sheetnames == ["Report"]
