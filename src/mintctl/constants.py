"""Project-wide named constants.

Layout constants mirror the candy machine program's account format and must
not be changed independently of the deployed program.
"""

CANDY_MACHINE_PROGRAM_ID: str = "cndyAnrLdpjq1Ssp1z8xxDsB8dxe7u4HL5Nxi2K5WXZ"
TOKEN_METADATA_PROGRAM_ID: str = "metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s"

CACHE_PATH: str = ".cache"

EXTENSION_PNG: str = ".png"
EXTENSION_JSON: str = ".json"

MAX_NAME_LENGTH: int = 32
MAX_URI_LENGTH: int = 200
MAX_SYMBOL_LENGTH: int = 10
MAX_CREATOR_LEN: int = 32 + 1 + 1
MAX_CREATOR_LIMIT: int = 5

# 8 discriminator + 32 authority + (4 + 6) uuid + (4 + 10) symbol
# + 2 seller fee + (1 + 4 + 5 * 34) creators + 8 max supply + 1 mutable
# + 1 retain authority + 4 max number of lines
CONFIG_ARRAY_START: int = (
    8
    + 32
    + 4
    + 6
    + 4
    + MAX_SYMBOL_LENGTH
    + 2
    + 1
    + 4
    + MAX_CREATOR_LIMIT * MAX_CREATOR_LEN
    + 8
    + 1
    + 1
    + 4
)
CONFIG_LINE_SIZE: int = 4 + MAX_NAME_LENGTH + 4 + MAX_URI_LENGTH

# add_config_lines rejects larger batches (transaction size limit)
MAX_LINES_PER_TRANSACTION: int = 10

MINT_ACCOUNT_SIZE: int = 82

LAMPORTS_PER_SOL: int = 1_000_000_000

CLUSTER_URLS: dict[str, str] = {
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}

ARWEAVE_UPLOAD_ENDPOINT: str = (
    "https://us-central1-principal-lane-314710.cloudfunctions.net/uploadFile4"
)
ARWEAVE_GATEWAY: str = "https://arweave.net"
IPFS_API_URL: str = "https://ipfs.infura.io:5001/api/v0"
IPFS_GATEWAY: str = "https://ipfs.io/ipfs"
