import sys

from thumbcrop.thumbnailer import main

sys.exit(main())
