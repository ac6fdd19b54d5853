#!/usr/bin/env python3
"""
Pytest tests for the FCS file parser and writer.
"""

import pytest
import numpy as np
from unittest.mock import patch, mock_open

from fcs_parser import FCSParser, load_expression_matrix, load_fcs_data, write_fcs_file


def build_fcs(keywords, data_bytes, version='FCS3.0'):
    """Assemble a minimal FCS file with data offsets in the header."""
    text = ('/' + ''.join(f'{k}/{v}/' for k, v in keywords.items())).encode('latin-1')
    text_start = 58
    text_end = text_start + len(text) - 1
    data_start = text_end + 1
    data_end = data_start + len(data_bytes) - 1
    header = version.ljust(10) + ''.join(
        str(v).rjust(8) for v in (text_start, text_end, data_start, data_end, 0, 0))
    return header.encode('ascii') + text + data_bytes


class TestFCSParser:
    """Test suite for FCS file parsing."""

    @pytest.fixture
    def cytof_file(self, tmp_path):
        values = np.array([[100.0, 1.5, 20.0, 1.0],
                           [200.0, 0.0, 35.5, 2.0],
                           [150.0, 7.25, 0.0, 3.0]])
        path = str(tmp_path / 'sample.fcs')
        write_fcs_file(path, values,
                       ['FSC-A', 'Nd142Di', 'Er170Di', 'Time'],
                       ['', '142Nd_CD19', 'CD3 (Er170Di)', ''])
        return path, values

    def test_round_trip_values(self, cytof_file):
        path, values = cytof_file
        df = load_fcs_data(path)

        assert list(df.columns) == ['FSC-A', 'Nd142Di', 'Er170Di', 'Time']
        np.testing.assert_allclose(df.to_numpy(), values)

    def test_marker_names_with_channel_fallback(self, cytof_file):
        path, _ = cytof_file
        matrix = load_expression_matrix(path)

        assert matrix.marker_names == ['FSC-A', 'CD19', 'CD3', 'Time']
        assert matrix.channel_names == ['FSC-A', 'Nd142Di', 'Er170Di', 'Time']
        assert matrix.n_cells == 3

    def test_metadata_keywords(self, cytof_file):
        path, _ = cytof_file
        parser = FCSParser()
        parser.parse_fcs_file(path)
        metadata = parser.get_metadata()

        assert metadata['$PAR'] == '4'
        assert metadata['$TOT'] == '3'
        assert metadata['$DATATYPE'] == 'F'
        assert parser.header['version'] == 'FCS3.1'

    def test_delimiter_inside_marker_name(self, tmp_path):
        path = str(tmp_path / 'slash.fcs')
        write_fcs_file(path, np.ones((2, 2)), ['FL1-A', 'FL2-A'], ['CD4/CD8', 'CD19'])
        parser = FCSParser()
        parser.parse_fcs_file(path)

        assert parser.get_marker_descriptions() == ['CD4/CD8', 'CD19']

    def test_big_endian_integer_data(self, tmp_path):
        data = np.array([[1, 2], [300, 65535]], dtype='>u2')
        keywords = {'$BYTEORD': '4,3,2,1', '$DATATYPE': 'I', '$MODE': 'L',
                    '$PAR': '2', '$TOT': '2',
                    '$P1N': 'FL1-H', '$P1B': '16', '$P2N': 'FL2-H', '$P2B': '16'}
        path = tmp_path / 'int.fcs'
        path.write_bytes(build_fcs(keywords, data.tobytes()))

        df = load_fcs_data(str(path))
        np.testing.assert_array_equal(df.to_numpy(), [[1, 2], [300, 65535]])

    def test_mixed_integer_widths(self, tmp_path):
        dtype = np.dtype([('a', '<u1'), ('b', '<u4')])
        records = np.array([(7, 70000), (255, 1)], dtype=dtype)
        keywords = {'$BYTEORD': '1,2,3,4', '$DATATYPE': 'I', '$MODE': 'L',
                    '$PAR': '2', '$TOT': '2',
                    '$P1N': 'A', '$P1B': '8', '$P2N': 'B', '$P2B': '32'}
        path = tmp_path / 'mixed.fcs'
        path.write_bytes(build_fcs(keywords, records.tobytes()))

        df = load_fcs_data(str(path))
        np.testing.assert_array_equal(df.to_numpy(), [[7, 70000], [255, 1]])

    def test_double_data(self, tmp_path):
        data = np.array([[0.5, -1.25]], dtype='<f8')
        keywords = {'$BYTEORD': '1,2,3,4', '$DATATYPE': 'D', '$MODE': 'L',
                    '$PAR': '2', '$TOT': '1', '$P1N': 'X', '$P2N': 'Y'}
        path = tmp_path / 'double.fcs'
        path.write_bytes(build_fcs(keywords, data.tobytes()))

        np.testing.assert_array_equal(load_fcs_data(str(path)).to_numpy(), data)

    def test_truncated_data_raises(self, tmp_path):
        keywords = {'$BYTEORD': '1,2,3,4', '$DATATYPE': 'F', '$MODE': 'L',
                    '$PAR': '2', '$TOT': '4', '$P1N': 'X', '$P2N': 'Y'}
        path = tmp_path / 'short.fcs'
        path.write_bytes(build_fcs(keywords, np.zeros(3, dtype='<f4').tobytes()))

        with pytest.raises(ValueError, match="Data segment too small"):
            load_fcs_data(str(path))

    def test_unsupported_datatype_raises(self, tmp_path):
        keywords = {'$DATATYPE': 'A', '$MODE': 'L', '$PAR': '1', '$TOT': '1', '$P1N': 'X'}
        path = tmp_path / 'ascii.fcs'
        path.write_bytes(build_fcs(keywords, b'1234'))

        with pytest.raises(ValueError, match="Unsupported data type"):
            load_fcs_data(str(path))

    @patch('builtins.open', new_callable=mock_open, read_data=b"mock fcs data")
    def test_not_an_fcs_file(self, mock_file):
        with pytest.raises(ValueError, match="Not an FCS file"):
            load_fcs_data("nonexistent_file.fcs")

    def test_writer_rejects_mismatched_names(self, tmp_path):
        with pytest.raises(ValueError):
            write_fcs_file(str(tmp_path / 'bad.fcs'), np.ones((2, 3)), ['A', 'B'])
