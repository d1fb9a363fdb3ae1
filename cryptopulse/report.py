# report.py

#———————————————————————————————————————————————————————————————————————————————
# CSV report of the presented rows:
#
#	Symbol,Price,24h Change,Favorite
#	BTC,$67012.34,1.25%,Yes
#———————————————————————————————————————————————————————————————————————————————

import os, csv, logging
from datetime import date
from typing import Iterable, Optional

from cryptopulse.util import my_name, ms_to_datetime, get_current_time_ms

REPORT_HEADER = ("Symbol", "Price", "24h Change", "Favorite")

#———————————————————————————————————————————————————————————————————————————————

def report_filename(day: Optional[date] = None) -> str:

	day = day or ms_to_datetime(get_current_time_ms()).date()

	return f"crypto-report-{day.isoformat()}.csv"

#———————————————————————————————————————————————————————————————————————————————

def report_lines(
	rows:		  Iterable,
	favorites:	  Iterable[str],
	quote_suffix: str = "USDT",
) -> list[tuple[str, str, str, str]]:

	favorites = set(favorites)

	return [
		(
			row.symbol.replace(quote_suffix, ""),
			row.price_text.replace(",", ""),
			row.change_text,
			"Yes" if row.symbol in favorites else "No",
		)
		for row in rows
	]

#———————————————————————————————————————————————————————————————————————————————

def write_report(
	rows:		  Iterable,
	favorites:	  Iterable[str],
	report_dir:	  str,
	logger:		  logging.Logger,
	quote_suffix: str = "USDT",
	day:		  Optional[date] = None,
) -> str:

	os.makedirs(report_dir, exist_ok=True)

	path = os.path.join(report_dir, report_filename(day))
	lines = report_lines(rows, favorites, quote_suffix)

	with open(path, "w", encoding="utf-8", newline="") as f:

		writer = csv.writer(f, lineterminator="\n")
		writer.writerow(REPORT_HEADER)
		writer.writerows(lines)

	logger.info(
		f"[{my_name()}]💾 {len(lines)} row(s) → {path}"
	)

	return path
