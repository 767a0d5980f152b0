from .transfer import LayerTransferer, LayerSource, LayerBlob
from .archiver import ImageArchiver, ArchiveIndex, UnpackedImage
from . import storage
from .storage import (
    init_database,
    save_image_record,
    get_image_record,
    delete_image_record,
    list_image_records,
)
