#!/usr/bin/env python3
"""
FCS file parser for flow and mass cytometry data.

Reads list-mode FCS 2.0/3.0/3.1 files (float, double and unsigned integer
data) and exposes them either as a pandas DataFrame of channels or as an
ExpressionMatrix with human readable marker names. A minimal float writer is
included for exporting matrices and building test fixtures.
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Sequence

from expression_matrix import ExpressionMatrix, clean_marker_names


HEADER_SIZE = 58
_DELIMITER = '/'


class FCSParser:
    """FCS file parser for cytometry event data."""

    def __init__(self):
        self.header = {}
        self.metadata = {}
        self.data = None

    def parse_fcs_file(self, filename: str) -> pd.DataFrame:
        """
        Parse an FCS file and return data as pandas DataFrame.

        Args:
            filename: Path to FCS file

        Returns:
            DataFrame with one column per channel ($PnN)
        """
        with open(filename, 'rb') as f:
            header_data = f.read(HEADER_SIZE)

            fcs_version = header_data[:10].decode('ascii', errors='ignore').strip()
            if not fcs_version.startswith('FCS'):
                raise ValueError(f"Not an FCS file: {filename}")

            offsets = [self._parse_offset(header_data[i:i + 8]) for i in range(10, 58, 8)]
            text_start, text_end, data_start, data_end = offsets[:4]
            self.header = {'version': fcs_version,
                           'text_start': text_start, 'text_end': text_end,
                           'data_start': data_start, 'data_end': data_end}

            f.seek(text_start)
            text_data = f.read(text_end - text_start + 1).decode('latin-1')
            metadata = self._parse_text_segment(text_data)

            # FCS 3 files larger than 99,999,999 bytes keep the offsets in TEXT only
            if data_start == 0 and data_end == 0:
                data_start = int(metadata.get('$BEGINDATA', '0'))
                data_end = int(metadata.get('$ENDDATA', '0'))

            f.seek(data_start)
            data_bytes = f.read(data_end - data_start + 1)

        data_array = self._parse_data_segment(data_bytes, metadata)
        df = pd.DataFrame(data_array, columns=self._get_parameter_names(metadata))

        self.metadata = metadata
        self.data = df
        return df

    @staticmethod
    def _parse_offset(raw: bytes) -> int:
        text = raw.decode('ascii', errors='ignore').strip()
        return int(text) if text else 0

    def _parse_text_segment(self, text_data: str) -> Dict[str, str]:
        """Parse the TEXT segment into a keyword dictionary (keys upper-cased)."""
        metadata = {}
        if not text_data:
            return metadata

        delimiter = text_data[0]
        body = text_data[1:]
        trailing = len(body) - len(body.rstrip(delimiter))
        if trailing % 2 == 1:
            body = body[:-1]

        # A doubled delimiter is an escaped delimiter inside a value
        placeholder = '\x00'
        parts = body.replace(delimiter * 2, placeholder).split(delimiter)
        parts = [p.replace(placeholder, delimiter) for p in parts]

        for i in range(0, len(parts) - 1, 2):
            metadata[parts[i].strip().upper()] = parts[i + 1].strip()

        return metadata

    def _parse_data_segment(self, data_bytes: bytes, metadata: Dict[str, str]) -> np.ndarray:
        """Decode the DATA segment into an events x parameters array."""
        mode = metadata.get('$MODE', 'L')
        if mode != 'L':
            raise ValueError(f"Unsupported FCS data mode: {mode} (only list mode 'L' is read)")

        datatype = metadata.get('$DATATYPE', 'F')
        par = int(metadata.get('$PAR', '0'))
        tot = int(metadata.get('$TOT', '0'))
        byte_order = '<' if metadata.get('$BYTEORD', '1,2,3,4').startswith('1') else '>'

        if datatype == 'F':
            dtype = np.dtype(f'{byte_order}f4')
        elif datatype == 'D':
            dtype = np.dtype(f'{byte_order}f8')
        elif datatype == 'I':
            widths = [int(metadata.get(f'$P{i}B', '32')) for i in range(1, par + 1)]
            unsupported = sorted(set(widths) - {8, 16, 32, 64})
            if unsupported:
                raise ValueError(f"Unsupported integer bit width(s): {unsupported}")
            if len(set(widths)) == 1:
                dtype = np.dtype(f'{byte_order}u{widths[0] // 8}')
            else:
                dtype = np.dtype([(f'p{i}', f'{byte_order}u{w // 8}') for i, w in enumerate(widths)])
        else:
            raise ValueError(f"Unsupported data type: {datatype}")

        if dtype.names is None:
            expected_size = par * tot * dtype.itemsize
        else:
            expected_size = tot * dtype.itemsize
        if len(data_bytes) < expected_size:
            raise ValueError(f"Data segment too small: {len(data_bytes)} < {expected_size}")

        if dtype.names is None:
            values = np.frombuffer(data_bytes[:expected_size], dtype=dtype, count=par * tot)
            return values.astype(float).reshape(tot, par)

        records = np.frombuffer(data_bytes[:expected_size], dtype=dtype, count=tot)
        return np.column_stack([records[name].astype(float) for name in dtype.names])

    def _get_parameter_names(self, metadata: Dict[str, str]) -> List[str]:
        """Channel identifiers ($PnN)."""
        par = int(metadata.get('$PAR', '0'))
        param_names = []
        for i in range(1, par + 1):
            param_name = metadata.get(f'$P{i}N', '').strip()
            param_names.append(param_name or f'Parameter_{i}')
        return param_names

    def get_marker_descriptions(self) -> List[str]:
        """Marker descriptions ($PnS); empty string where a channel has none."""
        par = int(self.metadata.get('$PAR', '0'))
        return [self.metadata.get(f'$P{i}S', '') for i in range(1, par + 1)]

    def get_metadata(self) -> Dict[str, str]:
        """Return the parsed metadata."""
        return self.metadata.copy()


def load_fcs_data(filename: str) -> pd.DataFrame:
    """
    Convenience function to load FCS data.

    Args:
        filename: Path to FCS file

    Returns:
        DataFrame with one column per channel
    """
    parser = FCSParser()
    return parser.parse_fcs_file(filename)


def load_expression_matrix(filename: str) -> ExpressionMatrix:
    """
    Load an FCS file as an ExpressionMatrix.

    Marker names come from $PnS and fall back to the channel identifier when
    the description is missing.
    """
    parser = FCSParser()
    df = parser.parse_fcs_file(filename)
    channel_names = list(df.columns)
    marker_names = clean_marker_names(parser.get_marker_descriptions(), channel_names)
    return ExpressionMatrix(df.to_numpy(dtype=float), marker_names, channel_names)


def _escape(value) -> str:
    return str(value).replace(_DELIMITER, _DELIMITER * 2)


def _build_text_segment(keywords: Dict[str, str]) -> str:
    body = ''.join(f"{_escape(k)}{_DELIMITER}{_escape(v)}{_DELIMITER}" for k, v in keywords.items())
    return _DELIMITER + body


def write_fcs_file(filename: str, values, channel_names: Sequence[str],
                   marker_names: Sequence[str] = None) -> str:
    """
    Write an events x channels matrix as a little endian float32 FCS 3.1 file.

    Args:
        filename: Output path
        values: 2D array of event data
        channel_names: $PnN for each column
        marker_names: Optional $PnS for each column (empty entries are skipped)

    Returns:
        The output path
    """
    data = np.asarray(values, dtype='<f4')
    if data.ndim != 2 or data.shape[1] != len(channel_names):
        raise ValueError(f"Data shape {data.shape} does not match {len(channel_names)} channels")
    if marker_names is not None and len(marker_names) != len(channel_names):
        raise ValueError(f"{len(marker_names)} marker names given for {len(channel_names)} channels")

    tot, par = data.shape
    data_bytes = data.tobytes()

    keywords = {
        '$BEGINANALYSIS': '0', '$ENDANALYSIS': '0',
        '$BEGINSTEXT': '0', '$ENDSTEXT': '0',
        '$BEGINDATA': '0', '$ENDDATA': '0',
        '$BYTEORD': '1,2,3,4',
        '$DATATYPE': 'F',
        '$MODE': 'L',
        '$NEXTDATA': '0',
        '$PAR': str(par),
        '$TOT': str(tot),
    }
    for i, channel in enumerate(channel_names, 1):
        keywords[f'$P{i}N'] = channel
        keywords[f'$P{i}B'] = '32'
        keywords[f'$P{i}E'] = '0,0'
        keywords[f'$P{i}R'] = '262144'
        if marker_names is not None and marker_names[i - 1]:
            keywords[f'$P{i}S'] = marker_names[i - 1]

    # Data offsets are part of TEXT, so iterate until their width settles
    text_start = HEADER_SIZE
    data_start = 0
    while True:
        keywords['$BEGINDATA'] = str(data_start)
        keywords['$ENDDATA'] = str(data_start + max(len(data_bytes), 1) - 1)
        text = _build_text_segment(keywords).encode('latin-1')
        new_data_start = text_start + len(text)
        if new_data_start == data_start:
            break
        data_start = new_data_start

    text_end = text_start + len(text) - 1
    data_end = data_start + max(len(data_bytes), 1) - 1
    small = data_end <= 99999999
    header = 'FCS3.1    ' + ''.join(
        str(v).rjust(8) for v in (text_start, text_end,
                                  data_start if small else 0,
                                  data_end if small else 0, 0, 0)
    )

    with open(filename, 'wb') as fh:
        fh.write(header.encode('ascii'))
        fh.write(text)
        fh.write(data_bytes)

    return filename


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1:
        filename = sys.argv[1]
        try:
            matrix = load_expression_matrix(filename)
            print(f"Loaded FCS file: {filename}")
            print(f"Shape: {matrix.values.shape}")
            print("Channels -> markers:")
            for channel, marker in zip(matrix.channel_names, matrix.marker_names):
                print(f"  {channel}: {marker}")
            print("\nSummary statistics:")
            print(matrix.to_frame().describe())
        except Exception as e:
            print(f"Error loading {filename}: {e}")
    else:
        print("Usage: python fcs_parser.py <fcs_file>")
