IMAGE_API_CONTEXT = "http://iiif.io/api/image/3/context.json"
IMAGE_API_PROTOCOL = "http://iiif.io/api/image"
PRESENTATION_CONTEXT = "http://iiif.io/api/presentation/3/context.json"

IMAGE_SERVICE_TYPE = "ImageService3"
TILED_PROFILE = "level0"
SYNTHESIZED_PROFILE = "level2"
