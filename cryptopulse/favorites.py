# favorites.py

#———————————————————————————————————————————————————————————————————————————————
# Favorite Set: an ordered list of instrument codes in a JSON file.
# Loaded once, saved on every change, last write wins.
#———————————————————————————————————————————————————————————————————————————————

import os, logging, orjson
from typing import Iterable, Optional

from cryptopulse.util import my_name, resource_path

#———————————————————————————————————————————————————————————————————————————————

class FavoriteStore:

	def __init__(self,
		path:	Optional[str],
		logger: logging.Logger,
	):

		"""
		`path=None` keeps the set in memory only.
		"""

		self.path	= resource_path(path) if path else None
		self.logger = logger
		self._symbols: list[str] = []

	#———————————————————————————————————————————————————————————————————————————

	def __contains__(self, symbol: str) -> bool:

		return symbol in self._symbols

	def __iter__(self):

		return iter(list(self._symbols))

	def __len__(self) -> int:

		return len(self._symbols)

	@property
	def symbols(self) -> list[str]:

		return list(self._symbols)

	#———————————————————————————————————————————————————————————————————————————

	def load(self) -> list[str]:

		if not self.path or not os.path.exists(self.path):

			self._symbols = []
			return self.symbols

		try:

			with open(self.path, "rb") as f:

				data = orjson.loads(f.read())

		except (OSError, orjson.JSONDecodeError) as e:

			self.logger.warning(
				f"[{my_name()}] unreadable favorites "
				f"{self.path}: {e}; starting empty"
			)
			data = []

		self._symbols = self._clean(
			data if isinstance(data, list) else []
		)

		self.logger.info(
			f"[{my_name()}]⭐ {len(self._symbols)} favorite(s) loaded"
		)

		return self.symbols

	#———————————————————————————————————————————————————————————————————————————

	def save(self) -> bool:

		"""
		Write the set to disk. On failure the in-memory set is kept, the
		error is logged and False is returned.
		"""

		if not self.path: return True

		tmp_path = self.path + ".tmp"

		try:

			with open(tmp_path, "wb") as f:

				f.write(orjson.dumps(self._symbols))

			os.replace(tmp_path, self.path)

		except OSError as e:

			self.logger.error(
				f"[{my_name()}] favorites not saved "
				f"to {self.path}: {e}"
			)

			try: os.remove(tmp_path)
			except FileNotFoundError: pass

			return False

		return True

	#———————————————————————————————————————————————————————————————————————————

	def toggle(self, symbol: str) -> bool:

		"""
		Add or remove `symbol`; returns True when it is a favorite afterwards.
		"""

		symbol = symbol.upper()

		if symbol in self._symbols:

			self._symbols.remove(symbol)
			now_favorite = False

		else:

			self._symbols.append(symbol)
			now_favorite = True

		self.save()

		return now_favorite

	#———————————————————————————————————————————————————————————————————————————

	@staticmethod
	def _clean(items: Iterable) -> list[str]:

		seen: list[str] = []

		for item in items:

			if isinstance(item, str) and item.upper() not in seen:

				seen.append(item.upper())

		return seen
