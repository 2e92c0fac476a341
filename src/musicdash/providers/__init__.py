from musicdash.providers.base import ResourceProvider, fill_discography, fill_tracklist
