KILO = 1000
MEGA = 1024 * 1024

SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR

MPEGTS_CONTENT_TYPE = "video/mp2t"
HLS_PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
HLS_PLAYLIST_NAME = "playlist.m3u8"
HLS_SEGMENT_SUFFIX = ".ts"
